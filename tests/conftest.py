"""
Pytest configuration and fixtures for Route Uplink tests.
"""
import asyncio
import json
from typing import Any, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from route_uplink.config import UplinkSettings
from route_uplink.schemas import TelemetryPoint
from route_uplink.service import UplinkService
from route_uplink.storage import SQLiteKeyValueStore

OK_TRACKING = (200, {"routeId": 42, "createdPoints": 1, "routeStatus": "ACTIVE"})
NETWORK_DOWN = 0


class FakeBackend:
    """
    In-process stand-in for the tracking backend, served through
    httpx.MockTransport.

    Responses are scripted as (status, body) tuples; status 0 raises a
    connection error instead of answering. While `tracking_gate` is set,
    tracking requests wait on it, which keeps a flush in flight.
    """

    def __init__(self):
        self.tracking_calls: List[dict] = []
        self.token_calls: List[dict] = []
        self.tracking_responses: List[Tuple[int, Any]] = []
        self.token_responses: List[Tuple[int, Any]] = []
        self.default_tracking: Tuple[int, Any] = OK_TRACKING
        self.default_token: Tuple[int, Any] = (401, {"message": "refresh token expired"})
        self.tracking_gate: Optional[asyncio.Event] = None
        self.token_gate: Optional[asyncio.Event] = None
        self.tracking_arrived: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def hold_tracking(self) -> asyncio.Event:
        """Block tracking requests until the returned event is set."""
        self.tracking_gate = asyncio.Event()
        self.tracking_arrived = asyncio.Event()
        return self.tracking_gate

    def hold_token(self) -> asyncio.Event:
        self.token_gate = asyncio.Event()
        return self.token_gate

    def grant_token(self, access: str = "access-2", refresh: Optional[str] = "refresh-2"):
        body = {"accessToken": access}
        if refresh is not None:
            body["refreshToken"] = refresh
        self.token_responses.append((200, body))

    @property
    def tracking_bodies(self) -> List[dict]:
        return [call["body"] for call in self.tracking_calls]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None

        if request.url.path == "/tracking/points":
            self.tracking_calls.append({"auth": request.headers.get("authorization"), "body": body})
            gate = self.tracking_gate
            if self.tracking_arrived is not None:
                self.tracking_arrived.set()
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                if gate is not None:
                    await gate.wait()
            finally:
                self.in_flight -= 1
            status, payload = self.tracking_responses.pop(0) if self.tracking_responses else self.default_tracking
        elif request.url.path == "/auth/token":
            self.token_calls.append({"body": body})
            if self.token_gate is not None:
                await self.token_gate.wait()
            status, payload = self.token_responses.pop(0) if self.token_responses else self.default_token
        else:
            return httpx.Response(404, json={"message": "not found"})

        if status == NETWORK_DOWN:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status, json=payload)


def make_point(i: int = 0, **overrides) -> TelemetryPoint:
    fields = {
        "latitude": 55.75 + i * 0.001,
        "longitude": 37.61,
        "recorded_at": f"2024-05-01T10:{i // 60:02d}:{i % 60:02d}Z",
    }
    fields.update(overrides)
    return TelemetryPoint(**fields)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll predicate() until it is truthy or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings(tmp_path):
    return UplinkSettings(
        api_base_url="http://backend.test",
        db_path=str(tmp_path / "uplink.db"),
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def store(tmp_path):
    kv = SQLiteKeyValueStore(str(tmp_path / "kv.db"))
    yield kv
    await kv.close()


@pytest_asyncio.fixture
async def http_client(backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    yield client
    await client.aclose()


def build_service(settings: UplinkSettings, backend: FakeBackend, **overrides) -> UplinkService:
    """Service against the fake backend; `overrides` replace settings fields."""
    if overrides:
        settings = settings.model_copy(update=overrides)
    return UplinkService(settings, transport=httpx.MockTransport(backend.handler))


@pytest_asyncio.fixture
async def service(settings, backend):
    svc = build_service(settings, backend)
    await svc.login("access-1", "refresh-1")
    yield svc
    await svc.stop()
