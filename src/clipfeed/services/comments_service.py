from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from clipfeed.domain.list_merge import ListState
from clipfeed.errors import AuthRequiredError, ValidationError
from clipfeed.integrations.identity import IdentityProvider
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.models import CurrentUser, Item, utc_now
from clipfeed.notifications import NotificationSink
from clipfeed.scheduling import AsyncioScheduler, Scheduler
from clipfeed.services.list_synchronizer import ListSynchronizer
from clipfeed.services.mutation_tracker import (
    DeleteMutation,
    InsertMutation,
    MutationHandle,
    MutationTracker,
)


logger = logging.getLogger(__name__)


COMMENTS_COLLECTION = "comments"


class CommentsFeed:
    """Comments under one video: live list, optimistic post and delete."""

    def __init__(
        self,
        *,
        store: RemoteStore,
        identity: IdentityProvider,
        video_id: str,
        scheduler: Scheduler | None = None,
        notifier: NotificationSink | None = None,
        dedup_window_seconds: float | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        scheduler = scheduler or AsyncioScheduler()
        self.video_id = video_id
        self._identity = identity
        self.sync = ListSynchronizer(
            store=store,
            collection=COMMENTS_COLLECTION,
            parent_field="video_id",
            parent_id=video_id,
            scheduler=scheduler,
            notifier=notifier,
            dedup_window_seconds=dedup_window_seconds,
        )
        self.tracker = MutationTracker(
            synchronizer=self.sync,
            store=store,
            owner_field="user_id",
            label="comment",
            scheduler=scheduler,
            notifier=notifier,
            clock=clock,
        )

    @property
    def comments(self) -> tuple[Item, ...]:
        return self.sync.items

    @property
    def loading(self) -> bool:
        return not self.sync.loaded

    def add_listener(self, listener: Callable[[ListState], None]) -> Callable[[], None]:
        return self.sync.add_listener(listener)

    async def open(self) -> bool:
        return await self.sync.open()

    def close(self) -> None:
        self.sync.close()

    async def _require_user(self) -> CurrentUser:
        user = await self._identity.get_current_user()
        if user is None:
            raise AuthRequiredError("you must be logged in to comment")
        return user

    async def add_comment(self, text: str) -> MutationHandle:
        user = await self._require_user()
        content = (text or "").strip()
        if not content:
            raise ValidationError("comment is empty")
        extra: dict[str, Any] = {}
        if user.email:
            extra["user_email"] = user.email
        return self.tracker.submit(
            InsertMutation(
                author_id=user.id,
                content=content,
                author_email=user.email,
                extra=extra,
            )
        )

    async def delete_comment(self, comment_id: str) -> MutationHandle:
        user = await self._require_user()
        comment = self.sync.find(comment_id)
        if comment is not None and comment.author_id != user.id:
            raise AuthRequiredError("you can only delete your own comments")
        return self.tracker.submit(DeleteMutation(item_id=comment_id, owner_id=user.id))

    @staticmethod
    def can_delete(comment: Item, user: CurrentUser | None) -> bool:
        return user is not None and comment.author_id == user.id and not comment.pending
