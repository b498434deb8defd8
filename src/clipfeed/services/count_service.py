from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from clipfeed.config import settings
from clipfeed.integrations.filters import eq
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.models import Count


logger = logging.getLogger(__name__)


class CountAggregator:
    """Per-parent derived counts (comments per video).

    Counts are recomputed wholesale on each parent-list refresh and are not kept
    live from push events; between refreshes a count may lag behind inserts and
    deletes made elsewhere.
    """

    def __init__(
        self,
        *,
        store: RemoteStore,
        collection: str | None = None,
        parent_field: str | None = None,
    ) -> None:
        self._store = store
        self.collection = collection or settings.count_collection
        self.parent_field = parent_field or settings.count_parent_field
        self._counts: dict[str, Count] = {}
        self._generation = 0

    @property
    def counts(self) -> dict[str, Count]:
        return dict(self._counts)

    def value(self, parent_id: str) -> int:
        c = self._counts.get(parent_id)
        return c.value if c is not None else 0

    async def _fetch_one(self, parent_id: str, previous: Count | None) -> Count:
        try:
            value = await self._store.count(
                self.collection, filters=[eq(self.parent_field, parent_id)]
            )
        except Exception:
            # Isolated: siblings keep going; this parent keeps its last value (or 0).
            logger.warning(
                "count fetch failed collection=%s parent=%s",
                self.collection,
                parent_id,
                exc_info=True,
            )
            return Count(
                parent_id=parent_id,
                value=previous.value if previous is not None else 0,
                stale=True,
            )
        return Count(parent_id=parent_id, value=value)

    async def refresh(self, parent_ids: Iterable[str]) -> dict[str, Count]:
        self._generation += 1
        generation = self._generation

        ids = list(dict.fromkeys(parent_ids))
        previous = self._counts
        results = await asyncio.gather(*(self._fetch_one(pid, previous.get(pid)) for pid in ids))

        if generation != self._generation:
            logger.debug("discarding superseded count refresh generation=%s", generation)
            return dict(self._counts)
        self._counts = {c.parent_id: c for c in results}
        return dict(self._counts)
