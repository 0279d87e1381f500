"""
Resolution and validation of uploaded reference files.

Both upload variants (multipart form field, base64 JSON payload) are
resolved into one `ResolvedUpload` before the shared file constraints run.
"""

from __future__ import annotations

import json
import math
import mimetypes
from dataclasses import dataclass
from typing import Optional, Union

import filetype
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from reference_admin.db import MAX_FILENAME_LENGTH
from reference_admin.errors import (
    ReferenceValidationError,
    Violation,
    violations_from_pydantic,
)
from reference_admin.schemas import ReferenceUploadPayload

DEFAULT_MIME_TYPE = "application/octet-stream"

ALLOWED_MIME_TYPES = (
    "image/*",
    "application/pdf",
    "application/msword",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
)

# Declared types that say nothing about the content.
_GENERIC_MIME_TYPES = {"", DEFAULT_MIME_TYPE, "binary/octet-stream"}


@dataclass(frozen=True)
class MultipartSource:
    data: bytes
    filename: Optional[str]
    content_type: Optional[str]


@dataclass(frozen=True)
class EncodedJsonSource:
    payload: ReferenceUploadPayload

    @property
    def filename(self) -> str:
        return self.payload.filename


UploadSource = Union[MultipartSource, EncodedJsonSource]


@dataclass(frozen=True)
class ResolvedUpload:
    data: bytes
    filename: Optional[str]
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def parse_json_source(body: bytes) -> EncodedJsonSource:
    """Parse a JSON upload body into its source, validating the DTO."""
    try:
        raw = json.loads(body or b"null")
    except ValueError:
        raise ReferenceValidationError([Violation("", "Invalid JSON body.")])
    try:
        payload = ReferenceUploadPayload.model_validate(raw)
    except ValidationError as exc:
        raise ReferenceValidationError(violations_from_pydantic(exc))
    return EncodedJsonSource(payload=payload)


def _too_large(size: int, max_bytes: int) -> Violation:
    return Violation(
        "reference",
        f"The file is too large ({size} bytes). "
        f"Allowed maximum size is {max_bytes} bytes.",
    )


async def read_multipart_source(
    upload: Optional[UploadFile], *, max_bytes: int
) -> MultipartSource:
    """Read at most `max_bytes` of the part; larger uploads are rejected."""
    if upload is None or not isinstance(upload, UploadFile):
        raise ReferenceValidationError(
            [Violation("reference", "Please select a file to upload")]
        )
    try:
        if upload.size is not None and upload.size > max_bytes:
            raise ReferenceValidationError([_too_large(upload.size, max_bytes)])
        data = await upload.read(max_bytes + 1)
        if len(data) > max_bytes:
            raise ReferenceValidationError(
                [_too_large(upload.size or len(data), max_bytes)]
            )
    finally:
        await upload.close()
    # A blank filename counts as unknown.
    filename = (upload.filename or "").strip() or None
    return MultipartSource(
        data=data, filename=filename, content_type=upload.content_type
    )


def max_encoded_length(max_bytes: int) -> int:
    return math.ceil(max_bytes / 3) * 4


def resolve(source: UploadSource, *, max_bytes: int) -> ResolvedUpload:
    if isinstance(source, EncodedJsonSource):
        encoded_length = len("".join(source.payload.data.split()))
        if encoded_length > max_encoded_length(max_bytes):
            raise ReferenceValidationError(
                [_too_large(encoded_length * 3 // 4, max_bytes)]
            )
        try:
            data = source.payload.decoded_data()
        except ValueError:
            raise ReferenceValidationError(
                [Violation("data", "The data is not valid base64.")]
            )
        return ResolvedUpload(
            data=data,
            filename=source.filename,
            mime_type=detect_mime_type(data, source.filename),
        )
    return ResolvedUpload(
        data=source.data,
        filename=source.filename,
        mime_type=detect_mime_type(source.data, source.filename, source.content_type),
    )


def detect_mime_type(
    data: bytes, filename: Optional[str], declared: Optional[str] = None
) -> str:
    """
    Detect the type from the file's magic bytes. When the content has no
    recognisable signature, fall back to a specific declared type, then to a
    guess from the filename; a fallback naming a format that has a signature
    is contradicted by the content and becomes octet-stream.
    """
    detected = filetype.guess_mime(data) if data else None
    if detected:
        return detected

    declared = (declared or "").split(";", 1)[0].strip().lower()
    if declared in _GENERIC_MIME_TYPES:
        declared = mimetypes.guess_type(filename or "")[0] or DEFAULT_MIME_TYPE
    if data and filetype.is_mime_supported(declared):
        return DEFAULT_MIME_TYPE
    return declared


def is_allowed_mime_type(mime_type: str) -> bool:
    for allowed in ALLOWED_MIME_TYPES:
        if allowed.endswith("/*"):
            if mime_type.startswith(allowed[:-1]):
                return True
        elif mime_type == allowed:
            return True
    return False


def validate_upload(upload: ResolvedUpload, *, max_bytes: int) -> list[Violation]:
    if upload.size == 0:
        return [Violation("reference", "Please select a file to upload")]

    violations: list[Violation] = []
    if upload.size > max_bytes:
        violations.append(_too_large(upload.size, max_bytes))
    if upload.filename and len(upload.filename) > MAX_FILENAME_LENGTH:
        violations.append(
            Violation(
                "reference",
                f"The filename is too long. It should have {MAX_FILENAME_LENGTH} "
                "characters or less.",
            )
        )
    if not is_allowed_mime_type(upload.mime_type):
        violations.append(
            Violation(
                "reference",
                f'The mime type of the file is invalid ("{upload.mime_type}").',
            )
        )
    return violations
