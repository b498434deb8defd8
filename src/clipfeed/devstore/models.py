# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from clipfeed.models import utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class StoreUser(SQLModel, table=True):
    __tablename__ = "users"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(default_factory=_new_id, primary_key=True)
    email: Optional[str] = Field(default=None, max_length=255)
    # Bearer token the devstore accepts for this user.
    access_token: str = Field(index=True, unique=True, min_length=1, max_length=255)
    created_at: datetime = Field(default_factory=utc_now)


class VideoRow(SQLModel, table=True):
    __tablename__ = "videos"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(default_factory=_new_id, primary_key=True)
    title: str = Field(min_length=1, max_length=500)
    video_url: str = Field(sa_column=Column(Text, nullable=False))
    storage_path: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    user_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class CommentRow(SQLModel, table=True):
    __tablename__ = "comments"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(default_factory=_new_id, primary_key=True)
    video_id: str = Field(index=True)
    user_id: str = Field(index=True)
    user_email: Optional[str] = Field(default=None, max_length=255)
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, index=True)


class LikeRow(SQLModel, table=True):
    __tablename__ = "likes"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (UniqueConstraint("user_id", "video_id", name="uq_likes_user_id_video_id"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    video_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class ProfileRow(SQLModel, table=True):
    __tablename__ = "profiles"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    # Same value as the owning user's id.
    id: str = Field(primary_key=True)
    username: str = Field(default="", max_length=64)
    bio: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    updated_at: datetime = Field(default_factory=utc_now)


# Collections exposed under /rest/v1, with the column that names the row owner.
COLLECTIONS: dict[str, tuple[type[SQLModel], str]] = {
    "videos": (VideoRow, "user_id"),
    "comments": (CommentRow, "user_id"),
    "likes": (LikeRow, "user_id"),
    "profiles": (ProfileRow, "id"),
}


def row_to_dict(row: SQLModel) -> dict[str, Any]:
    data = row.model_dump(mode="json")
    created = data.get("created_at")
    # SQLite hands datetimes back naive; they are stored as UTC.
    if isinstance(created, str) and created and not created.endswith("Z") and "+" not in created[10:]:
        data["created_at"] = created + "Z"
    return data
