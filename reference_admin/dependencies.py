"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Iterator

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from reference_admin.config import get_settings
from reference_admin.db import (
    ArticleReferenceRow,
    ArticleRow,
    Database,
    ReferenceRepository,
)
from reference_admin.storage import (
    InMemoryStorageClient,
    ReferenceUploader,
    S3StorageClient,
    StorageClient,
)

_database: Database | None = None
_storage_client: StorageClient | None = None


def get_database() -> Database:
    """
    Return a singleton database so the engine and its pool persist across requests.
    """
    global _database
    if _database:
        return _database

    settings = get_settings()
    if settings.use_in_memory_backends:
        _database = Database()
    else:
        _database = Database(settings.database_url)
    return _database


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    return _storage_client


def get_uploader(
    storage: StorageClient = Depends(get_storage_client),
) -> ReferenceUploader:
    return ReferenceUploader(storage=storage, prefix=get_settings().storage_prefix)


def get_session(database: Database = Depends(get_database)) -> Iterator[Session]:
    """One unit of work per request; handlers commit it explicitly."""
    session = database.Session()
    try:
        yield session
    finally:
        session.close()


def get_repository(session: Session = Depends(get_session)) -> ReferenceRepository:
    return ReferenceRepository(session)


def get_article(
    id: int, repository: ReferenceRepository = Depends(get_repository)
) -> ArticleRow:
    article = repository.get_article(id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


def get_reference(
    id: int, repository: ReferenceRepository = Depends(get_repository)
) -> ArticleReferenceRow:
    reference = repository.get_reference(id)
    if not reference:
        raise HTTPException(status_code=404, detail="Reference not found")
    return reference
