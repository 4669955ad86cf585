"""
Upload scheduler: decides when the queue is flushed and guarantees that
only one flush (and so one network submission) is in flight at a time.

State machine:

    IDLE --kick_flush--> SENDING --success--> IDLE
                            |
                            +--failure / watchdog--> SCHEDULED_RETRY --timer--> IDLE (kick)

Triggers:
    - enqueue()           immediately after points are persisted
    - periodic heartbeat  every periodic_flush_s
    - retry timer         retry_delay_s after a failed flush

Every trigger goes through kick_flush(). A trigger arriving while a flush is
running joins it. If the running flush is older than watchdog_s it is
abandoned (cancelled, its result ignored) and a new one starts, so a hung
HTTP call can never wedge the pipeline.

A flush sends a snapshot of the queue and, on success, removes exactly that
many points from the front. Points appended while the request is in flight
stay queued for the next flush.
"""
import asyncio
import time
from typing import Callable, Optional, Sequence

import structlog

from route_uplink.errors import WatchdogTimeout
from route_uplink.queue_store import QueueStore
from route_uplink.schemas import TelemetryPoint, TrackingSubmitRequest
from route_uplink.sender import TrackingSender

logger = structlog.get_logger(__name__)


class UploadScheduler:

    def __init__(
        self,
        queue: QueueStore,
        sender: TrackingSender,
        retry_delay_s: float = 30.0,
        periodic_flush_s: float = 60.0,
        watchdog_s: float = 45.0,
        route_idle_timeout_s: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.route = queue.route
        self.sender = sender
        self.retry_delay_s = retry_delay_s
        self.periodic_flush_s = periodic_flush_s
        self.watchdog_s = watchdog_s
        self.route_idle_timeout_s = route_idle_timeout_s
        self._clock = clock

        # Flush state; _flush_done is not None exactly while SENDING
        self._generation = 0
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_done: Optional[asyncio.Future] = None
        self._flush_started_at: Optional[float] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None

        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._idle_since: Optional[float] = None
        self._closed = False

    # ============ Public API ============

    @property
    def sending(self) -> bool:
        return self._flush_done is not None

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    async def start(self):
        """Load persisted state, start the heartbeat and push any backlog."""
        self._closed = False
        await self.queue.hydrate()
        self._ensure_periodic()
        if len(self.queue):
            self.kick_flush("startup")

    async def enqueue(self, points: Sequence[TelemetryPoint]) -> Optional[asyncio.Future]:
        """
        Buffer points from the producer and trigger a flush.

        Never raises and never waits for the network. The returned future
        resolves when the triggered (or joined) flush finishes; producers
        are free to ignore it.
        """
        if not points:
            return None
        try:
            await self.queue.enqueue(points)
        except Exception:
            logger.exception("enqueue failed", count=len(points))
        self._idle_since = self._clock()
        self._ensure_periodic()
        return self.kick_flush("enqueue")

    async def flush(self):
        """Flush now (or join the running flush) and wait for the outcome."""
        self._ensure_periodic()
        await self.kick_flush("manual")

    async def get_route_id(self) -> Optional[int]:
        await self.queue.hydrate()
        return self.route.get()

    async def clear_route_if_idle(self) -> bool:
        await self.queue.hydrate()
        return await self.route.clear_if_idle(len(self.queue))

    async def stats(self) -> dict:
        await self.queue.hydrate()
        return {
            **self.queue.stats(),
            "sending": self.sending,
            "retry_pending": self.retry_pending,
            "cloud_connected": self.sender.is_connected,
        }

    def reset(self):
        """Drop every timer and all in-memory state right away."""
        self._cancel_retry()
        self._abandon_flush()
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            self._periodic_task = None
        self.queue.reset()
        self._idle_since = None

    async def close(self):
        """Stop timers and wait for the heartbeat task to exit."""
        self._closed = True
        periodic = self._periodic_task
        self.reset()
        if periodic is not None:
            try:
                await periodic
            except asyncio.CancelledError:
                pass

    # ============ Flush orchestration ============

    def kick_flush(self, reason: str) -> asyncio.Future:
        """
        Start a flush unless one is already running.

        Returns a future resolving when the current flush completes or is
        abandoned by the watchdog.
        """
        now = self._clock()
        if self._flush_done is not None:
            elapsed = now - self._flush_started_at
            if elapsed < self.watchdog_s:
                return asyncio.shield(self._flush_done)
            logger.warning(
                "flush stuck detected on re-entry, resetting sender",
                reason=reason,
                error=str(WatchdogTimeout(elapsed, self.watchdog_s)),
            )
            self._abandon_flush()

        loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation
        self._flush_started_at = now
        self._flush_done = loop.create_future()
        self._flush_task = loop.create_task(self._run_flush(generation, reason))
        self._watchdog = loop.call_later(self.watchdog_s, self._on_watchdog, generation)
        return asyncio.shield(self._flush_done)

    async def _run_flush(self, generation: int, reason: str):
        try:
            await self._flush(generation, reason)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("flush threw", reason=reason)
            if generation == self._generation:
                self._schedule_retry()
        finally:
            if generation == self._generation:
                self._finish_flush()

    async def _flush(self, generation: int, reason: str):
        await self.queue.hydrate()
        if generation != self._generation:
            return
        if not self.queue.hydrated:
            logger.warning("flush deferred: stored queue unreadable", reason=reason)
            self._schedule_retry()
            return

        snapshot = self.queue.snapshot()
        if not snapshot:
            logger.debug("flush skipped: queue empty", reason=reason)
            return

        evicted_mark = self.queue.evicted_total
        route_id = self.route.get()
        request = TrackingSubmitRequest(
            route_id=route_id,
            start_new_route=route_id is None,
            points=list(snapshot),
        )
        logger.info("flush start", reason=reason, size=len(snapshot), route_id=route_id)

        result = await self.sender.send_with_refresh(request)

        if generation != self._generation:
            logger.warning("ignoring result of abandoned flush", ok=result.ok, status=result.status)
            return

        if not result.ok:
            logger.warning(
                "batch failed, will retry later",
                status=result.status,
                message=result.message,
                error=str(result.error) if result.error else None,
            )
            self._schedule_retry()
            return

        route_id = result.data.route_id if result.data is not None else None
        # Delivered points must be removed and the route adopted together,
        # even if the watchdog abandons this flush in between
        removed = await asyncio.shield(self._acknowledge(len(snapshot), evicted_mark, route_id))

        logger.info(
            "flush success",
            sent=len(snapshot),
            removed=removed,
            left=len(self.queue),
            route_id=self.route.get(),
        )

    async def _acknowledge(self, count: int, evicted_mark: int, route_id: Optional[int]) -> int:
        removed = await self.queue.remove_acknowledged(count, evicted_mark)
        if route_id is not None:
            await self.route.set(route_id)
        return removed

    def _on_watchdog(self, generation: int):
        if generation != self._generation or self._flush_done is None:
            return
        elapsed = self._clock() - self._flush_started_at
        logger.warning(
            "flush watchdog fired, resetting sender",
            error=str(WatchdogTimeout(elapsed, self.watchdog_s)),
        )
        self._abandon_flush()
        self._schedule_retry()

    def _abandon_flush(self):
        """Leave SENDING without waiting for the current flush task."""
        if self._flush_done is None:
            return
        # Bumping the generation makes the old task's outcome stale
        self._generation += 1
        task = self._flush_task
        self._finish_flush()
        if task is not None and not task.done():
            task.cancel()

    def _finish_flush(self):
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        done = self._flush_done
        self._flush_done = None
        self._flush_task = None
        self._flush_started_at = None
        if done is not None and not done.done():
            done.set_result(None)

    # ============ Timers ============

    def _schedule_retry(self):
        if self._retry_handle is not None or self._closed:
            return
        logger.info("retry scheduled", delay_s=self.retry_delay_s)
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self.retry_delay_s, self._on_retry)

    def _on_retry(self):
        self._retry_handle = None
        self.kick_flush("retry")

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _ensure_periodic(self):
        if self._closed:
            return
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())

    async def _periodic_loop(self):
        """Heartbeat: flush every periodic_flush_s and end idle routes."""
        if self._idle_since is None:
            self._idle_since = self._clock()

        while not self._closed:
            try:
                await asyncio.sleep(self.periodic_flush_s)
                await self._check_idle_route()
                self.kick_flush("periodic")
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("periodic tick failed")

    async def _check_idle_route(self):
        if self.route_idle_timeout_s <= 0 or self._idle_since is None:
            return
        if self.sending or len(self.queue) or self.route.get() is None:
            return
        if self._clock() - self._idle_since >= self.route_idle_timeout_s:
            await self.route.clear_if_idle(len(self.queue))
