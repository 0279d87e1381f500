"""
Admin API for file attachments ("references") linked to articles.

This package provides a FastAPI application with storage and database
abstractions: uploads land in S3-compatible object storage, metadata in
a SQLAlchemy-managed database.
"""
