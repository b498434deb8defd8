from __future__ import annotations

import logging
from collections.abc import Callable

from clipfeed.config import settings
from clipfeed.errors import AuthRequiredError, ClipfeedError, ValidationError
from clipfeed.integrations.identity import IdentityProvider
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.integrations.storage.media_storage import MediaStorage, build_media_storage_key
from clipfeed.models import Video, video_from_row
from clipfeed.scheduling import now_ms


logger = logging.getLogger(__name__)


class UploadService:
    """Put the media object first, then create the video row that points at it."""

    def __init__(
        self,
        *,
        store: RemoteStore,
        identity: IdentityProvider,
        media: MediaStorage,
        max_size_bytes: int | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._identity = identity
        self._media = media
        self._max_size = settings.media_max_size_bytes if max_size_bytes is None else max_size_bytes
        self._clock_ms = clock_ms

    async def upload(
        self,
        *,
        title: str,
        filename: str,
        data: bytes | None,
        content_type: str | None = None,
    ) -> Video:
        user = await self._identity.get_current_user()
        if user is None:
            raise AuthRequiredError("you must be logged in to upload")
        clean_title = (title or "").strip()
        if not clean_title:
            raise ValidationError("title is required")
        if not data:
            raise ValidationError("please select a video file")
        if len(data) > self._max_size:
            raise ValidationError(f"file too large. size={len(data)} max={self._max_size}")

        key = build_media_storage_key(
            user_id=user.id, filename=filename, uploaded_at_ms=self._clock_ms()
        )
        await self._media.put_bytes(key, data, content_type=content_type)
        url = self._media.public_url(key)
        logger.info("media uploaded key=%s size=%s", key, len(data))

        try:
            row = await self._store.insert(
                "videos",
                {
                    "title": clean_title,
                    "video_url": url,
                    "storage_path": key,
                    "user_id": user.id,
                },
            )
        except ClipfeedError:
            logger.warning("video row insert failed; removing object key=%s", key)
            try:
                await self._media.delete(key)
            except ClipfeedError:
                logger.warning("orphaned media object key=%s", key, exc_info=True)
            raise
        return video_from_row(row)
