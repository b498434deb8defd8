from __future__ import annotations

import asyncio
import logging
from typing import Any

from clipfeed.errors import ClipfeedError, ConflictError, ValidationError
from clipfeed.integrations.filters import NEWEST_FIRST, eq, ilike
from clipfeed.integrations.identity import CachedIdentityProvider
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.integrations.storage.media_storage import MediaStorage
from clipfeed.models import QueryIntent, Video, video_from_row
from clipfeed.notifications import LoggingNotificationSink, Notice, NotificationSink
from clipfeed.scheduling import AsyncioScheduler, Scheduler
from clipfeed.services.count_service import CountAggregator
from clipfeed.services.search_service import DebouncedQueryController


logger = logging.getLogger(__name__)


VIDEOS_COLLECTION = "videos"


async def query_videos(
    store: RemoteStore, *, term: str = "", user_id: str | None = None
) -> list[Video]:
    filters = []
    if user_id:
        filters.append(eq("user_id", user_id))
    if term.strip():
        filters.append(ilike("title", term.strip()))
    rows = await store.query(VIDEOS_COLLECTION, filters=filters, order=NEWEST_FIRST)
    return [video_from_row(r) for r in rows]


async def list_creator_videos(store: RemoteStore, creator_id: str) -> list[Video]:
    return await query_videos(store, user_id=creator_id)


async def get_video(store: RemoteStore, video_id: str) -> Video | None:
    rows = await store.query(VIDEOS_COLLECTION, filters=[eq("id", video_id)], limit=1)
    return video_from_row(rows[0]) if rows else None


class VideoFeed:
    """Home page: searchable video list plus comments-per-video counts."""

    def __init__(
        self,
        *,
        store: RemoteStore,
        scheduler: Scheduler | None = None,
        notifier: NotificationSink | None = None,
        counts: CountAggregator | None = None,
        idle_ms: int | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler or AsyncioScheduler()
        self._notifier = notifier or LoggingNotificationSink()
        self.counts = counts or CountAggregator(store=store)
        self.search: DebouncedQueryController[list[Video]] = DebouncedQueryController(
            run_query=self._run_query,
            on_result=self._apply_result,
            on_error=self._on_error,
            scheduler=self._scheduler,
            idle_ms=idle_ms,
        )
        self.videos: list[Video] = []
        self.loading = True
        self._counts_task: asyncio.Task[Any] | None = None

    async def _run_query(self, term: str) -> list[Video]:
        return await query_videos(self._store, term=term)

    def load(self) -> None:
        self.loading = True
        self.search.submit_now(self.search.term)

    def on_search_input(self, term: str) -> None:
        self.search.on_term_change(term)

    def _apply_result(self, intent: QueryIntent, videos: list[Video]) -> None:
        self.videos = videos
        self.loading = False
        self._counts_task = self._scheduler.spawn(self.counts.refresh(v.id for v in videos))

    def _on_error(self, intent: QueryIntent, error: Exception) -> None:
        self.loading = False
        self._notifier.notify(Notice(kind="load_failed", message="Error fetching videos.", error=error))

    def comment_count(self, video_id: str) -> int:
        return self.counts.value(video_id)

    async def counts_settled(self) -> None:
        if self._counts_task is not None:
            await asyncio.shield(self._counts_task)

    def close(self) -> None:
        self.search.close()


class MyVideos:
    """The signed-in user's own uploads: list, rename, delete."""

    def __init__(
        self,
        *,
        store: RemoteStore,
        identity: CachedIdentityProvider,
        media: MediaStorage,
    ) -> None:
        self._store = store
        self._identity = identity
        self._media = media
        self.videos: list[Video] = []

    async def load(self) -> list[Video]:
        user = await self._identity.get_current_user()
        if user is None:
            self.videos = []
            return self.videos
        self.videos = await query_videos(self._store, user_id=user.id)
        return self.videos

    async def update_title(self, video_id: str, title: str) -> Video:
        await self._identity.require_user()
        new_title = (title or "").strip()
        if not new_title:
            raise ValidationError("title is required")
        row = await self._store.update(VIDEOS_COLLECTION, video_id, {"title": new_title})
        updated: Video | None = video_from_row(row) if row else None
        for idx, v in enumerate(self.videos):
            if v.id == video_id:
                if updated is None:
                    updated = Video(
                        id=v.id,
                        title=new_title,
                        video_url=v.video_url,
                        user_id=v.user_id,
                        created_at=v.created_at,
                        storage_path=v.storage_path,
                    )
                self.videos[idx] = updated
                break
        if updated is None:
            raise ConflictError(f"video {video_id} not found", collection=VIDEOS_COLLECTION)
        return updated

    async def delete_video(self, video_id: str) -> None:
        user = await self._identity.require_user()
        video = next((v for v in self.videos if v.id == video_id), None)
        try:
            await self._store.delete(VIDEOS_COLLECTION, video_id, owner=eq("user_id", user.id))
        except ConflictError:
            logger.debug("video already deleted id=%s", video_id)

        self.videos = [v for v in self.videos if v.id != video_id]

        if video is not None and video.storage_path:
            try:
                await self._media.delete(video.storage_path)
            except ClipfeedError:
                # The row is gone; an orphaned object is only logged.
                logger.warning(
                    "failed to delete media key=%s", video.storage_path, exc_info=True
                )
