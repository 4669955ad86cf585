"""
Bounded, disk-persisted FIFO of tracking points waiting for upload.

The whole queue is written back to the store after every mutation so that
a restart resumes exactly where the previous process stopped. Persistence
failures are logged and the in-memory queue stays authoritative. Nothing is
written until the stored queue has been read at least once.
"""
import asyncio
import json
from typing import Any, List, Optional, Sequence, Tuple

import structlog
from pydantic import ValidationError

from route_uplink.errors import PersistenceError
from route_uplink.route_state import ROUTE_ID_KEY, RouteState
from route_uplink.schemas import TelemetryPoint
from route_uplink.storage import SQLiteKeyValueStore

logger = structlog.get_logger(__name__)

QUEUE_KEY = "tracking:queue"


def parse_queue(raw: Optional[str]) -> List[TelemetryPoint]:
    """Decode the stored queue; corrupt JSON yields an empty queue."""
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("stored queue is not valid JSON, starting empty", error=str(e))
        return []
    if not isinstance(items, list):
        return []

    points = []
    for item in items:
        try:
            points.append(TelemetryPoint.model_validate(item))
        except ValidationError as e:
            logger.warning("dropping invalid stored point", error=str(e))
    return points


class QueueStore:
    """
    Producer-facing buffer. Producers only append; points leave the queue
    only through remove_acknowledged() after confirmed delivery.
    """

    def __init__(self, store: SQLiteKeyValueStore, route: RouteState, max_length: int = 1000):
        self._store = store
        self.route = route
        self.max_length = max_length
        self._queue: List[TelemetryPoint] = []
        self._evicted_total = 0
        self._hydrated = False
        self._hydrate_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    async def hydrate(self):
        """
        Load queue and route id from disk on first use.

        Concurrent callers share a single load.
        """
        if self._hydrated:
            return
        if self._hydrate_task is None:
            self._hydrate_task = asyncio.ensure_future(self._load())
        task = self._hydrate_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # reset() dropped the shared load; the next use starts a new one
            if not task.cancelled():
                raise

    async def _load(self):
        try:
            values = await self._store.multi_get([QUEUE_KEY, ROUTE_ID_KEY])
        except PersistenceError as e:
            logger.warning("hydrate failed, will retry on next use", error=str(e), pending=len(self._queue))
            return
        finally:
            if self._hydrate_task is asyncio.current_task():
                self._hydrate_task = None

        # Points accepted while the store was unreadable go after the backlog
        pending = self._queue
        combined = parse_queue(values[QUEUE_KEY]) + pending
        evicted = max(0, len(combined) - self.max_length)
        self._queue = combined[evicted:]
        if pending:
            self._evicted_total += evicted
        if self.route.get() is None:
            self.route.adopt_raw(values[ROUTE_ID_KEY])
        self._hydrated = True
        logger.info("queue hydrated", length=len(self._queue), pending=len(pending), route_id=self.route.get())
        if pending:
            await self._persist()

    async def enqueue(self, points: Sequence[TelemetryPoint]) -> int:
        """
        Append points, drop the oldest beyond max_length, persist.

        Returns the number of evicted points.
        """
        if not points:
            return 0
        await self.hydrate()

        combined = self._queue + list(points)
        evicted = max(0, len(combined) - self.max_length)
        self._queue = combined[evicted:]
        self._evicted_total += evicted
        if evicted:
            logger.warning(
                "queue cap hit, dropped oldest points",
                dropped=evicted,
                max_length=self.max_length,
            )

        await self._persist()
        return evicted

    @property
    def evicted_total(self) -> int:
        """Points dropped by the length cap since this store was created."""
        return self._evicted_total

    def snapshot(self) -> Tuple[TelemetryPoint, ...]:
        """Fixed copy of the queue as it stands now."""
        return tuple(self._queue)

    async def remove_acknowledged(self, count: int, evicted_mark: Optional[int] = None) -> int:
        """
        Remove the first `count` points (those proven delivered).

        evicted_mark is evicted_total read when the snapshot was taken:
        snapshot points already evicted since then are not removed twice.
        """
        if evicted_mark is not None:
            count -= self._evicted_total - evicted_mark
        count = max(0, min(count, len(self._queue)))
        if not count:
            return 0
        self._queue = self._queue[count:]
        await self._persist()
        return count

    def stats(self) -> dict:
        return {"length": len(self._queue), "route_id": self.route.get()}

    def reset(self):
        """Forget in-memory state; the next use re-reads the store."""
        self._queue = []
        self._hydrated = False
        if self._hydrate_task is not None:
            self._hydrate_task.cancel()
            self._hydrate_task = None
        self.route.reset()

    async def clear_persisted(self):
        """Delete the stored queue and route id."""
        try:
            await self._store.multi_remove([QUEUE_KEY, ROUTE_ID_KEY])
        except PersistenceError as e:
            logger.warning("clear persisted queue failed", error=str(e))

    async def _persist(self):
        if not self._hydrated:
            # Writing now would replace a stored backlog that was never read
            logger.warning("queue not loaded yet, keeping points in memory", length=len(self._queue))
            return
        payload: List[Any] = [point.to_wire() for point in self._queue]
        try:
            await self._store.set_item(QUEUE_KEY, json.dumps(payload))
        except PersistenceError as e:
            logger.warning("persist queue failed", error=str(e), length=len(self._queue))
