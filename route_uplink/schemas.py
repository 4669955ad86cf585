"""
Pydantic schemas for tracking points and the two backend endpoints.

Wire and storage formats use camelCase keys; Python code uses snake_case.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    MOVE = "MOVE"
    STOP = "STOP"


class RouteStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class WireModel(BaseModel):
    """Base for models exchanged with the backend or the local store."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys and unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============ Telemetry ============

class TelemetryPoint(WireModel):
    """
    One timestamped location sample with optional motion metadata.

    recorded_at is kept as the producer's timestamp string (ISO-8601 in
    practice); datetimes are converted on the way in.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    recorded_at: str = Field(..., min_length=1)
    event_type: EventType = EventType.MOVE
    accuracy: Optional[float] = Field(None, ge=0)
    speed: Optional[float] = None
    heading: Optional[float] = None
    stay_duration_seconds: Optional[int] = Field(None, ge=0)

    @field_validator("recorded_at", mode="before")
    @classmethod
    def _timestamp_to_str(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return value


# ============ POST /tracking/points ============

class TrackingSubmitRequest(WireModel):
    """Batch of points for one route (or the start of a new one)."""
    route_id: Optional[int] = None
    start_new_route: bool = False
    points: List[TelemetryPoint]


class TrackingSubmitResponse(WireModel):
    """Acknowledgment of a stored batch."""
    route_id: Optional[int] = None
    created_points: int = 0
    route_status: Optional[RouteStatus] = None


# ============ POST /auth/token ============

class TokenRefreshRequest(WireModel):
    refresh_token: str


class TokenRefreshResponse(WireModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None


def unwrap_envelope(body: Any) -> Tuple[bool, Any, Optional[str]]:
    """
    Split an optional ``{ok, data, message}`` response envelope.

    Returns (ok, payload, message). Bodies with neither ``data`` nor
    ``ok`` are returned as the payload unchanged.
    """
    if not isinstance(body, dict) or ("data" not in body and "ok" not in body):
        return True, body, None

    ok = body.get("ok", True) is not False
    message = body.get("message")
    if message is None and isinstance(body.get("error"), str):
        message = body["error"]
    return ok, body.get("data"), message
