"""
Storage abstraction for S3-compatible object stores and in-memory testing,
plus the helper that names and places reference files.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import unicodedata
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional, Protocol
from urllib.parse import urlencode

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def put_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def delete(self, path: str) -> None:
        ...

    def presign_get(
        self,
        path: str,
        expires_in: int = 3600,
        *,
        response_content_type: Optional[str] = None,
        response_content_disposition: Optional[str] = None,
    ) -> str:
        ...

    def list_keys(self, prefix: str) -> list[str]:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def put_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self.stored_objects[path] = data

    def delete(self, path: str) -> None:
        self.stored_objects.pop(path, None)

    def presign_get(
        self,
        path: str,
        expires_in: int = 3600,
        *,
        response_content_type: Optional[str] = None,
        response_content_disposition: Optional[str] = None,
    ) -> str:
        params = {"op": "get", "expires": expires_in}
        if response_content_type:
            params["response-content-type"] = response_content_type
        if response_content_disposition:
            params["response-content-disposition"] = response_content_disposition
        return f"{self.base_url}/{path}?{urlencode(params)}"

    def list_keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self.stored_objects if key.startswith(prefix))


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (AWS S3, MinIO, Tencent COS).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def put_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
            ACL="private",
        )

    def delete(self, path: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=path)

    def presign_get(
        self,
        path: str,
        expires_in: int = 3600,
        *,
        response_content_type: Optional[str] = None,
        response_content_disposition: Optional[str] = None,
    ) -> str:
        params = {"Bucket": self.bucket, "Key": path}
        if response_content_type:
            params["ResponseContentType"] = response_content_type
        if response_content_disposition:
            params["ResponseContentDisposition"] = response_content_disposition
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params=params,
            ExpiresIn=expires_in,
        )

    def list_keys(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return keys


def _slugify(value: str) -> str:
    value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^\w\s-]", "", value).strip().lower()
    return re.sub(r"[-\s_]+", "-", value).strip("-")


@dataclass
class ReferenceUploader:
    """Stores reference files under generated, collision-free keys."""

    storage: StorageClient
    prefix: str = "article_reference"

    def generate_key(self, original_filename: Optional[str], mime_type: str) -> str:
        name = PurePosixPath(original_filename or "")
        stem = _slugify(name.stem) or "reference"
        extension = name.suffix.lower().lstrip(".")
        if not re.fullmatch(r"[a-z0-9]{1,10}", extension):
            extension = _extension_for(mime_type)
        key = f"{stem}-{uuid.uuid4().hex[:13]}"
        return f"{key}.{extension}" if extension else key

    def path_for(self, key: str) -> str:
        return f"{self.prefix}/{key}"

    def store(
        self, data: bytes, original_filename: Optional[str], mime_type: str
    ) -> str:
        key = self.generate_key(original_filename, mime_type)
        self.storage.put_bytes(self.path_for(key), data, mime_type)
        logger.info("Stored reference file %s (%d bytes)", key, len(data))
        return key

    def delete(self, key: str) -> None:
        self.storage.delete(self.path_for(key))
        logger.info("Deleted reference file %s", key)


def _extension_for(mime_type: str) -> str:
    guessed = mimetypes.guess_extension(mime_type or "") or ""
    return guessed.lstrip(".")
