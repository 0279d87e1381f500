"""
Pydantic schemas for the reference admin API.

`ReferenceResponse` is the "main" serialization group and `ReferenceUpdate`
the "input" group: the only fields a client may change on an existing
reference.
"""

from __future__ import annotations

import base64
import binascii

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ReferenceUploadPayload(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    data: str = Field(..., min_length=1)

    def decoded_data(self) -> bytes:
        """Raise ValueError if `data` is not valid base64."""
        try:
            return base64.b64decode("".join(self.data.split()), validate=True)
        except binascii.Error as exc:
            raise ValueError(str(exc)) from exc


class ReferenceResponse(BaseModel):
    model_config = ConfigDict(
        alias_generator=AliasGenerator(serialization_alias=to_camel),
        from_attributes=True,
    )

    id: int
    article_id: int
    original_filename: str
    mime_type: str
    position: int


class ReferenceUpdate(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    original_filename: str | None = None


class ViolationItem(BaseModel):
    propertyPath: str
    title: str


class ViolationResponse(BaseModel):
    title: str
    detail: str
    violations: list[ViolationItem]
