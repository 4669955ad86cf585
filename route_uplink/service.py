"""
Route Uplink service - wires the pipeline together.

Architecture:
    [location producer] --enqueue()--> +----------------+
                                       | UploadScheduler| --HTTPS--> POST /tracking/points
                                       +----------------+
                                         |          |
                                         v          v
                                  [QueueStore]  [SessionCoordinator] --> POST /auth/token
                                  [RouteState]
                                         |
                                         v
                                  [SQLite kv store]
                                  (offline buffer + credentials)
"""
import time
from typing import Any, Callable, Dict, Optional, Sequence

import httpx
import structlog

from route_uplink.config import UplinkSettings, get_settings
from route_uplink.queue_store import QueueStore
from route_uplink.route_state import RouteState
from route_uplink.scheduler import UploadScheduler
from route_uplink.schemas import TelemetryPoint
from route_uplink.sender import TrackingSender
from route_uplink.session import SessionCoordinator
from route_uplink.storage import SQLiteKeyValueStore

logger = structlog.get_logger(__name__)


class UplinkService:
    """
    Owns the store, the HTTP client and every pipeline component.
    """

    def __init__(
        self,
        settings: Optional[UplinkSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.store = SQLiteKeyValueStore(s.db_path)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(s.request_timeout_s),
            limits=httpx.Limits(max_connections=5),
            transport=transport,
        )
        self.session = SessionCoordinator(
            self.store,
            self.client,
            s.token_url,
            max_attempts=s.max_refresh_attempts,
            warn_interval_s=s.refresh_warn_interval_s,
            clock=clock,
        )
        self.sender = TrackingSender(self.client, self.session, s.tracking_url, timeout_s=s.request_timeout_s)
        self.queue = QueueStore(self.store, RouteState(self.store), max_length=s.max_queue_length)
        self.scheduler = UploadScheduler(
            self.queue,
            self.sender,
            retry_delay_s=s.retry_delay_s,
            periodic_flush_s=s.periodic_flush_s,
            watchdog_s=s.watchdog_s,
            route_idle_timeout_s=s.route_idle_timeout_s,
            clock=clock,
        )

    async def start(self):
        logger.info(
            "Route Uplink starting",
            api=self.settings.api_base_url,
            db_path=self.settings.db_path,
            max_queue_length=self.settings.max_queue_length,
        )
        await self.scheduler.start()

    async def enqueue(self, points: Sequence[TelemetryPoint]):
        return await self.scheduler.enqueue(points)

    async def flush(self):
        await self.scheduler.flush()

    async def get_route_id(self) -> Optional[int]:
        return await self.scheduler.get_route_id()

    async def clear_route_if_idle(self) -> bool:
        return await self.scheduler.clear_route_if_idle()

    async def status(self) -> Dict[str, Any]:
        stats = await self.scheduler.stats()
        stats["refresh_attempts"] = self.session.refresh_attempts
        stats["refreshing"] = self.session.refreshing
        return stats

    async def login(self, access_token: str, refresh_token: str, profile: Optional[Dict[str, Any]] = None):
        """Store a credential from an external login and resume uploads."""
        await self.session.save_tokens(access_token, refresh_token, profile)
        if len(self.queue):
            self.scheduler.kick_flush("login")

    async def logout(self, discard_queue: bool = False):
        """
        Clear credentials, timers and in-memory state.

        Queued points stay on disk for the next session unless discard_queue
        is set.
        """
        self.scheduler.reset()
        if discard_queue:
            await self.queue.clear_persisted()
        await self.session.logout()
        logger.info("logged out", discarded_queue=discard_queue)

    async def stop(self):
        """Stop timers and release the HTTP client and the database."""
        logger.info("Shutting down Route Uplink...")
        await self.scheduler.close()
        await self.client.aclose()
        await self.store.close()
        logger.info("Route Uplink stopped")
