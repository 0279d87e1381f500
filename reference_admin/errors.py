"""
Error types raised by the reference handlers and their HTTP translations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Violation:
    property_path: str
    message: str

    def as_dict(self) -> dict:
        return {"propertyPath": self.property_path, "title": self.message}


def violations_from_pydantic(exc: ValidationError) -> list[Violation]:
    violations = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ()))
        violations.append(Violation(path, error.get("msg", "Invalid value.")))
    return violations


class ReferenceValidationError(Exception):
    """Raised when an upload or update fails validation."""

    def __init__(self, violations: list[Violation]):
        self.violations = list(violations)
        super().__init__(
            "; ".join(f"{v.property_path}: {v.message}" for v in self.violations)
        )


class AccessDeniedError(Exception):
    """Raised when the actor may not manage the parent article."""

    def __init__(self, message: str = "Access Denied."):
        self.message = message
        super().__init__(message)


def validation_error_payload(violations: list[Violation]) -> dict:
    return {
        "title": "Validation Failed",
        "detail": "\n".join(
            f"{v.property_path}: {v.message}" if v.property_path else v.message
            for v in violations
        ),
        "violations": [v.as_dict() for v in violations],
    }


async def handle_validation_error(
    request: Request, exc: ReferenceValidationError
) -> JSONResponse:
    logger.warning(
        "Rejected %s %s: %s", request.method, request.url.path, exc
    )
    return JSONResponse(
        status_code=400, content=validation_error_payload(exc.violations)
    )


async def handle_access_denied(
    request: Request, exc: AccessDeniedError
) -> JSONResponse:
    logger.warning("Access denied for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=403, content={"detail": exc.message})
