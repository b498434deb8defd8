from __future__ import annotations

import logging

from clipfeed.errors import ValidationError
from clipfeed.integrations.filters import eq
from clipfeed.integrations.identity import CachedIdentityProvider
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.models import Profile, utc_now


logger = logging.getLogger(__name__)


PROFILES_COLLECTION = "profiles"


def _profile_from_row(row: dict) -> Profile:
    return Profile(
        id=str(row["id"]),
        username=str(row.get("username") or ""),
        bio=str(row.get("bio") or ""),
    )


class ProfileService:
    def __init__(self, *, store: RemoteStore, identity: CachedIdentityProvider) -> None:
        self._store = store
        self._identity = identity

    async def load(self) -> Profile:
        """A missing profile row is not an error: an empty profile is returned."""
        user = await self._identity.require_user()
        rows = await self._store.query(
            PROFILES_COLLECTION, filters=[eq("id", user.id)], limit=1
        )
        if not rows:
            logger.info("no profile yet user_id=%s", user.id)
            return Profile(id=user.id)
        return _profile_from_row(rows[0])

    async def save(self, *, username: str, bio: str = "") -> Profile:
        user = await self._identity.require_user()
        name = (username or "").strip()
        if not name:
            raise ValidationError("username is required")
        row = await self._store.upsert(
            PROFILES_COLLECTION,
            {
                "id": user.id,
                "username": name,
                "bio": (bio or "").strip(),
                "updated_at": utc_now().isoformat(),
            },
            on_conflict="id",
        )
        return _profile_from_row(row) if row else Profile(id=user.id, username=name, bio=bio.strip())
