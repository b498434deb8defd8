from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


TEMP_ID_PREFIX = "tmp-"

MutationKind = Literal["insert", "delete"]


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_correlation_token() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def is_correlation_token(item_id: str) -> bool:
    return item_id.startswith(TEMP_ID_PREFIX)


def parse_timestamp(value: object) -> datetime:
    """Parse a store timestamp (RFC3339 string or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        # Allow trailing Z.
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"cannot parse timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None


@dataclass(frozen=True)
class Item:
    """One entry of a parent-scoped list (a comment under a video).

    `id` is a server id, or a correlation token while `pending` is true.
    """

    id: str
    parent_id: str
    author_id: str
    content: str
    created_at: datetime
    author_email: str | None = None
    pending: bool = False


@dataclass(frozen=True)
class Video:
    id: str
    title: str
    video_url: str
    user_id: str
    created_at: datetime | None = None
    storage_path: str | None = None


@dataclass
class PendingMutation:
    correlation_token: str
    kind: MutationKind
    payload: dict[str, Any]
    status: MutationStatus = MutationStatus.PENDING
    error: Exception | None = None


@dataclass(frozen=True)
class ToggleState:
    resource_id: str
    user_id: str
    active: bool = False
    in_flight: bool = False
    desired_next: bool | None = None
    # Last value the store acknowledged, and the count that goes with it.
    confirmed_active: bool = False
    confirmed_count: int = 0
    stale: bool = False

    @property
    def count(self) -> int:
        return max(0, self.confirmed_count + int(self.active) - int(self.confirmed_active))

    @property
    def phase(self) -> Literal["inactive", "active", "transitioning"]:
        if self.desired_next is not None:
            return "transitioning"
        return "active" if self.active else "inactive"


@dataclass(frozen=True)
class Count:
    parent_id: str
    value: int = 0
    stale: bool = False

    def __post_init__(self) -> None:
        if self.value < 0:
            object.__setattr__(self, "value", 0)


@dataclass(frozen=True)
class QueryIntent:
    generation: int
    term: str


@dataclass(frozen=True)
class Profile:
    id: str
    username: str = ""
    bio: str = ""


def item_from_row(row: dict[str, Any], *, parent_field: str = "video_id") -> Item:
    return Item(
        id=str(row["id"]),
        parent_id=str(row.get(parent_field) or ""),
        author_id=str(row.get("user_id") or ""),
        content=str(row.get("content") or ""),
        created_at=parse_timestamp(row.get("created_at")),
        author_email=row.get("user_email") if isinstance(row.get("user_email"), str) else None,
    )


def video_from_row(row: dict[str, Any]) -> Video:
    created_raw = row.get("created_at")
    return Video(
        id=str(row["id"]),
        title=str(row.get("title") or ""),
        video_url=str(row.get("video_url") or ""),
        user_id=str(row.get("user_id") or ""),
        created_at=parse_timestamp(created_raw) if created_raw else None,
        storage_path=row.get("storage_path") if isinstance(row.get("storage_path"), str) else None,
    )
