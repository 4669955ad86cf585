"""
Tracking submission with one refresh-and-retry on 401.

A flush makes at most two network submissions: the first attempt, and a
single retry only when the first was rejected as unauthorized and a fresh
token was obtained. Every other failure is returned as-is; retrying those
is the scheduler's job.
"""
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError

from route_uplink.errors import AuthExhausted, DeliveryError, UplinkError
from route_uplink.schemas import TrackingSubmitRequest, TrackingSubmitResponse, unwrap_envelope
from route_uplink.session import SessionCoordinator

logger = structlog.get_logger(__name__)


@dataclass
class SendResult:
    """Outcome of one submission. status 0 means no HTTP response."""
    ok: bool
    status: int
    data: Optional[TrackingSubmitResponse] = None
    message: Optional[str] = None
    error: Optional[UplinkError] = None

    @classmethod
    def failure(cls, status: int, message: Optional[str] = None, error: Optional[UplinkError] = None) -> "SendResult":
        return cls(ok=False, status=status, message=message, error=error or DeliveryError(status, message))


class TrackingSender:
    """
    Posts point batches to /tracking/points with a bearer token.
    """

    def __init__(self, client: httpx.AsyncClient, session: SessionCoordinator, tracking_url: str, timeout_s: float = 20.0):
        self._client = client
        self.session = session
        self.tracking_url = tracking_url
        self.timeout_s = timeout_s
        self._last_success_time: Optional[float] = None
        self.network_attempts = 0

    async def send_with_refresh(self, request: TrackingSubmitRequest) -> SendResult:
        token = await self.session.get_access_token()
        if not token:
            token = await self.session.refresh_token()
        if not token:
            return self._unauthorized("no access token")

        first = await self.send_once(token, request)
        if first.ok or not first.error.is_unauthorized:
            return first

        logger.warning("401 received, refreshing token")
        retry_token = await self.session.refresh_token()
        if not retry_token:
            logger.warning("refresh returned no token, not retrying")
            if self.session.exhausted:
                first.error = AuthExhausted(self.session.refresh_attempts)
            return first

        return await self.send_once(retry_token, request)

    def _unauthorized(self, message: str) -> SendResult:
        error = AuthExhausted(self.session.refresh_attempts) if self.session.exhausted else None
        return SendResult.failure(401, message, error)

    async def send_once(self, token: str, request: TrackingSubmitRequest) -> SendResult:
        """Single POST; never raises for HTTP or transport failures."""
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        self.network_attempts += 1

        try:
            response = await self._client.post(
                self.tracking_url,
                json=request.to_wire(),
                headers=headers,
                timeout=self.timeout_s,
            )
        except httpx.ConnectError:
            logger.warning("network unreachable - points stay queued")
            return SendResult.failure(0, "network unreachable")
        except httpx.TimeoutException:
            logger.warning("upload timeout - will retry")
            return SendResult.failure(0, "timeout")
        except httpx.HTTPError as e:
            logger.warning("upload error", error=str(e) or type(e).__name__)
            return SendResult.failure(0, str(e) or type(e).__name__)

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error")
            if not isinstance(message, str):
                message = f"HTTP error {status}"
            return SendResult.failure(status, message)

        ok, data, message = unwrap_envelope(body)
        if not ok:
            return SendResult.failure(status, message or "rejected by server")

        try:
            parsed = TrackingSubmitResponse.model_validate(data) if isinstance(data, dict) else TrackingSubmitResponse()
        except ValidationError as e:
            # Points were accepted; only the acknowledgment body is unusable
            logger.warning("unexpected tracking response body", error=str(e))
            parsed = TrackingSubmitResponse()

        self._last_success_time = time.time()
        logger.debug(
            "upload success",
            created_points=parsed.created_points,
            route_id=parsed.route_id,
            route_status=parsed.route_status.value if parsed.route_status else None,
        )
        return SendResult(ok=True, status=status, data=parsed)

    @property
    def is_connected(self) -> bool:
        """Check if we've had a recent successful upload."""
        return self._last_success_time is not None and (time.time() - self._last_success_time) < 30.0
