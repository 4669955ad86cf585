"""
Session coordinator: supplies bearer tokens and renews them.

Renewal is single-flight. When several requests fail with an expired token
at the same moment they all wait on the same POST /auth/token call instead
of racing each other with the same refresh token.

Attempts are bounded (max_refresh_attempts). Once the bound is reached,
refresh_token() returns None without touching the network until a
successful login or explicit reset_backoff(); the warning about it is
emitted at most once per refresh_warn_interval_s.
"""
import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from pydantic import ValidationError

from route_uplink.errors import AuthExhausted, PersistenceError
from route_uplink.log_config import token_preview
from route_uplink.schemas import TokenRefreshRequest, TokenRefreshResponse, unwrap_envelope
from route_uplink.storage import SQLiteKeyValueStore

logger = structlog.get_logger(__name__)

ACCESS_KEY = "accessToken"
REFRESH_KEY = "refreshToken"
PROFILE_KEY = "profile"


class SessionCoordinator:

    def __init__(
        self,
        store: SQLiteKeyValueStore,
        client: httpx.AsyncClient,
        token_url: str,
        max_attempts: int = 3,
        warn_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._client = client
        self.token_url = token_url
        self.max_attempts = max_attempts
        self.warn_interval_s = warn_interval_s
        self._clock = clock
        self._refresh_attempts = 0
        self._last_exhausted_warning: Optional[float] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def refresh_attempts(self) -> int:
        return self._refresh_attempts

    @property
    def exhausted(self) -> bool:
        return self._refresh_attempts >= self.max_attempts

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def get_access_token(self) -> Optional[str]:
        try:
            return await self._store.get_item(ACCESS_KEY) or None
        except PersistenceError as e:
            logger.warning("read access token failed", error=str(e))
            return None

    async def get_profile(self) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._store.get_item(PROFILE_KEY)
        except PersistenceError as e:
            logger.warning("read profile failed", error=str(e))
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    async def save_tokens(self, access_token: str, refresh_token: str, profile: Optional[Dict[str, Any]] = None):
        """
        Store a credential obtained by login, registration or verification.

        Raises PersistenceError: a login that could not be stored must not
        look successful to the caller.
        """
        await self._write_tokens(access_token, refresh_token, profile)
        if profile is None:
            # A new login never inherits the previous user's profile
            await self._store.remove_item(PROFILE_KEY)
        self.reset_backoff()

    async def refresh_token(self) -> Optional[str]:
        """Renew the access token; concurrent callers share one renewal."""
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._refresh())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _refresh_finished(self, task: asyncio.Task):
        if self._refresh_task is task:
            self._refresh_task = None

    async def _refresh(self) -> Optional[str]:
        if self.exhausted:
            self._warn_exhausted()
            return None

        try:
            stored_refresh = await self._store.get_item(REFRESH_KEY)
        except PersistenceError as e:
            logger.warning("read refresh token failed", error=str(e))
            return None
        if not stored_refresh:
            # Nothing to refresh is not a failed refresh
            logger.debug("no refresh token stored")
            return None

        self._refresh_attempts += 1
        attempt = self._refresh_attempts
        body = TokenRefreshRequest(refresh_token=stored_refresh).to_wire()

        try:
            response = await self._client.post(self.token_url, json=body)
        except httpx.HTTPError as e:
            logger.warning("token refresh failed", attempt=attempt, error=str(e) or type(e).__name__)
            return None

        if not response.is_success:
            logger.warning("token refresh rejected", attempt=attempt, status=response.status_code)
            return None

        try:
            ok, data, message = unwrap_envelope(response.json())
            if not ok:
                logger.warning("token refresh rejected", attempt=attempt, message=message)
                return None
            tokens = TokenRefreshResponse.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("token refresh returned malformed body", attempt=attempt, error=str(e))
            return None

        try:
            await self._write_tokens(
                tokens.access_token,
                tokens.refresh_token or stored_refresh,
                tokens.profile,
            )
        except PersistenceError as e:
            logger.warning("persist refreshed tokens failed", error=str(e))

        self.reset_backoff()
        logger.info("token refreshed", token=token_preview(tokens.access_token))
        return tokens.access_token

    def _warn_exhausted(self):
        now = self._clock()
        last = self._last_exhausted_warning
        if last is not None and now - last < self.warn_interval_s:
            return
        self._last_exhausted_warning = now
        logger.warning("token refresh suppressed", error=str(AuthExhausted(self._refresh_attempts)))

    async def _write_tokens(self, access_token: str, refresh_token: str, profile: Optional[Dict[str, Any]]):
        await self._store.multi_set([(ACCESS_KEY, access_token), (REFRESH_KEY, refresh_token)])
        if profile is not None:
            await self._store.set_item(PROFILE_KEY, json.dumps(profile))

    def reset_backoff(self):
        self._refresh_attempts = 0
        self._last_exhausted_warning = None

    async def logout(self):
        """Drop every stored credential and abandon a pending renewal."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        self.reset_backoff()
        try:
            await self._store.multi_remove([ACCESS_KEY, REFRESH_KEY, PROFILE_KEY])
        except PersistenceError as e:
            logger.warning("clear credentials failed", error=str(e))
