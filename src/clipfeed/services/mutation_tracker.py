from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from clipfeed.domain.list_merge import (
    LocalDeleteApplied,
    LocalDeleteRolledBack,
    LocalInsertApplied,
    LocalInsertConfirmed,
    LocalInsertRolledBack,
)
from clipfeed.errors import ClipfeedError, ConflictError, ValidationError
from clipfeed.integrations.filters import eq
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.models import (
    Item,
    MutationStatus,
    PendingMutation,
    new_correlation_token,
    utc_now,
)
from clipfeed.notifications import LoggingNotificationSink, Notice, NotificationSink
from clipfeed.scheduling import AsyncioScheduler, Scheduler
from clipfeed.services.list_synchronizer import ListSynchronizer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InsertMutation:
    author_id: str
    content: str
    # Extra columns sent with the row (e.g. user_email).
    extra: dict[str, Any] = field(default_factory=dict)
    author_email: str | None = None


@dataclass(frozen=True)
class DeleteMutation:
    item_id: str
    owner_id: str | None = None


Mutation = Union[InsertMutation, DeleteMutation]


class MutationHandle:
    def __init__(self, mutation: PendingMutation, task: asyncio.Task[Any] | None = None) -> None:
        self.mutation = mutation
        self._task = task

    @property
    def token(self) -> str:
        return self.mutation.correlation_token

    @property
    def status(self) -> MutationStatus:
        return self.mutation.status

    async def wait(self) -> PendingMutation:
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.mutation


class MutationTracker:
    """Optimistic insert/delete for one list.

    The local change is applied synchronously inside `submit()`; the store call
    runs in the background and is reconciled (confirmed or rolled back) when it settles.
    """

    def __init__(
        self,
        *,
        synchronizer: ListSynchronizer,
        store: RemoteStore,
        owner_field: str = "user_id",
        label: str = "comment",
        scheduler: Scheduler | None = None,
        notifier: NotificationSink | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self._sync = synchronizer
        self._store = store
        self._owner_field = owner_field
        self._label = label
        self._scheduler = scheduler or AsyncioScheduler()
        self._notifier = notifier or LoggingNotificationSink()
        self._clock = clock
        self.pending: dict[str, PendingMutation] = {}
        # Delete dedup: item id -> handle of the outstanding or completed delete.
        self._deletes: dict[str, MutationHandle] = {}

    @property
    def collection(self) -> str:
        return self._sync.collection

    def submit(self, mutation: Mutation) -> MutationHandle:
        if isinstance(mutation, InsertMutation):
            return self._submit_insert(mutation)
        return self._submit_delete(mutation)

    def _submit_insert(self, mutation: InsertMutation) -> MutationHandle:
        token = new_correlation_token()
        temp = Item(
            id=token,
            parent_id=self._sync.parent_id,
            author_id=mutation.author_id,
            content=mutation.content,
            created_at=self._clock(),
            author_email=mutation.author_email,
            pending=True,
        )
        row: dict[str, Any] = {
            **mutation.extra,
            self._sync.parent_field: self._sync.parent_id,
            self._owner_field: mutation.author_id,
            "content": mutation.content,
        }
        pending = PendingMutation(correlation_token=token, kind="insert", payload=row)
        self.pending[token] = pending
        self._sync.apply(LocalInsertApplied(item=temp))
        task = self._scheduler.spawn(self._run_insert(pending))
        return MutationHandle(pending, task)

    async def _run_insert(self, pending: PendingMutation) -> None:
        token = pending.correlation_token
        try:
            row = await self._store.insert(self.collection, pending.payload)
            confirmed = self._sync.parse_row(row)
        except (ClipfeedError, KeyError, ValueError) as e:
            pending.status = MutationStatus.FAILED
            pending.error = e
            self._sync.apply(LocalInsertRolledBack(temp_id=token))
            logger.warning(
                "insert rolled back collection=%s token=%s", self.collection, token, exc_info=True
            )
            self._notifier.notify(
                Notice(kind="insert_failed", message=f"Failed to post {self._label}.", error=e)
            )
            return
        finally:
            self.pending.pop(token, None)

        pending.status = MutationStatus.CONFIRMED
        before = self._sync.state
        after = self._sync.apply(LocalInsertConfirmed(temp_id=token, item=confirmed))
        if after is before:
            # A push already swapped the tentative entry for the stored row.
            logger.debug(
                "insert confirmation already applied collection=%s id=%s",
                self.collection,
                confirmed.id,
            )

    def _submit_delete(self, mutation: DeleteMutation) -> MutationHandle:
        existing = self._deletes.get(mutation.item_id)
        if existing is not None:
            logger.debug(
                "duplicate delete ignored collection=%s id=%s", self.collection, mutation.item_id
            )
            return existing

        snapshot = self._sync.find(mutation.item_id)
        if snapshot is not None and snapshot.pending:
            raise ValidationError("cannot delete an entry that is still being saved")

        pending = PendingMutation(
            correlation_token=mutation.item_id,
            kind="delete",
            payload={"id": mutation.item_id, "owner_id": mutation.owner_id},
        )
        if snapshot is None:
            # Already removed (locally or by a push): nothing to do.
            pending.status = MutationStatus.CONFIRMED
            handle = MutationHandle(pending)
            self._deletes[mutation.item_id] = handle
            return handle

        self.pending[mutation.item_id] = pending
        self._sync.apply(LocalDeleteApplied(item_id=mutation.item_id))
        task = self._scheduler.spawn(self._run_delete(pending, snapshot, mutation.owner_id))
        handle = MutationHandle(pending, task)
        self._deletes[mutation.item_id] = handle
        return handle

    async def _run_delete(
        self, pending: PendingMutation, snapshot: Item, owner_id: str | None
    ) -> None:
        item_id = pending.correlation_token
        owner = eq(self._owner_field, owner_id) if owner_id is not None else None
        try:
            await self._store.delete(self.collection, item_id, owner=owner)
        except ConflictError:
            # Target already gone: the end state is what we wanted.
            logger.debug("delete target already gone collection=%s id=%s", self.collection, item_id)
        except ClipfeedError as e:
            if self._sync.state.deleted_remotely(item_id):
                # Committed on the store; only the response was lost.
                logger.debug(
                    "delete failed after push confirmed it collection=%s id=%s",
                    self.collection,
                    item_id,
                    exc_info=True,
                )
                pending.status = MutationStatus.CONFIRMED
                return
            pending.status = MutationStatus.FAILED
            pending.error = e
            # Allow the user to try again.
            self._deletes.pop(item_id, None)
            self._sync.apply(LocalDeleteRolledBack(item=snapshot))
            logger.warning(
                "delete rolled back collection=%s id=%s", self.collection, item_id, exc_info=True
            )
            self._notifier.notify(
                Notice(kind="delete_failed", message=f"Failed to delete {self._label}.", error=e)
            )
            return
        finally:
            self.pending.pop(item_id, None)
        pending.status = MutationStatus.CONFIRMED
