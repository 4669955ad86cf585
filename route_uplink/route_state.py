"""
Persisted server-assigned route id.

A present id means the next batch continues that route; an absent id means
the next successful send starts a new one.
"""
from typing import Optional

import structlog

from route_uplink.errors import PersistenceError
from route_uplink.storage import SQLiteKeyValueStore

logger = structlog.get_logger(__name__)

ROUTE_ID_KEY = "tracking:routeId"


def parse_route_id(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring unparseable stored route id", raw=raw)
        return None


class RouteState:
    def __init__(self, store: SQLiteKeyValueStore):
        self._store = store
        self._route_id: Optional[int] = None

    def get(self) -> Optional[int]:
        return self._route_id

    def adopt_raw(self, raw: Optional[str]):
        """Take the stored value read during hydration."""
        self._route_id = parse_route_id(raw)

    async def set(self, route_id: Optional[int]):
        self._route_id = route_id
        await self._persist()

    async def clear_if_idle(self, queue_length: int) -> bool:
        """
        Forget the route once nothing is waiting to be sent.

        An idle gap ends the trip: points produced later start a fresh route
        instead of being stitched onto a stale one.
        """
        if queue_length > 0 or self._route_id is None:
            return False
        logger.info("route id cleared (idle)", route_id=self._route_id)
        await self.set(None)
        return True

    def reset(self):
        self._route_id = None

    async def _persist(self):
        try:
            if self._route_id is None:
                await self._store.remove_item(ROUTE_ID_KEY)
            else:
                await self._store.set_item(ROUTE_ID_KEY, str(self._route_id))
        except PersistenceError as e:
            logger.warning("persist route id failed", error=str(e))
