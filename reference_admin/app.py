"""
FastAPI application entry point for the reference admin service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from reference_admin.config import get_settings
from reference_admin.errors import (
    AccessDeniedError,
    ReferenceValidationError,
    handle_access_denied,
    handle_validation_error,
)
from reference_admin.routes import router


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title="Article Reference Admin", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(ReferenceValidationError, handle_validation_error)
    app.add_exception_handler(AccessDeniedError, handle_access_denied)
    return app


app = create_app()
