from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error body returned by every devstore route: {error, message, request_id, details}."""

    error: str
    message: str
    request_id: str | None = None
    details: object | None = None


class CurrentUserResponse(BaseModel):
    id: str
    email: str | None = None


class StorageUploadResponse(BaseModel):
    Key: str


class StorageDeleteRequest(BaseModel):
    prefixes: list[str] = Field(default_factory=list)


class StorageObjectName(BaseModel):
    name: str
