"""
Tests for wire/storage schemas.

Validates:
- Points serialize with camelCase keys and omit unset optionals
- Points are immutable and bounded
- Request/response models for both endpoints
- Optional {ok, data} response envelopes are unwrapped
"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from route_uplink.schemas import (
    EventType,
    RouteStatus,
    TelemetryPoint,
    TokenRefreshResponse,
    TrackingSubmitRequest,
    TrackingSubmitResponse,
    unwrap_envelope,
)


class TestTelemetryPoint:

    def test_wire_format_uses_camel_case(self):
        point = TelemetryPoint(
            latitude=1.0,
            longitude=2.0,
            recorded_at="2024-05-01T10:00:00Z",
            event_type=EventType.STOP,
            stay_duration_seconds=120,
        )
        assert point.to_wire() == {
            "latitude": 1.0,
            "longitude": 2.0,
            "recordedAt": "2024-05-01T10:00:00Z",
            "eventType": "STOP",
            "stayDurationSeconds": 120,
        }

    def test_event_type_defaults_to_move(self):
        point = TelemetryPoint.model_validate({"latitude": 1, "longitude": 2, "recordedAt": "T1"})
        assert point.event_type == EventType.MOVE
        assert point.recorded_at == "T1"

    def test_accepts_datetime_timestamp(self):
        ts = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        point = TelemetryPoint(latitude=1, longitude=2, recorded_at=ts)
        assert point.recorded_at == "2024-05-01T10:00:00+00:00"

    def test_round_trips_through_wire_format(self):
        point = TelemetryPoint(latitude=1, longitude=2, recorded_at="T1", accuracy=5.0, speed=1.5, heading=90.0)
        assert TelemetryPoint.model_validate(point.to_wire()) == point

    def test_rejects_out_of_range_coordinates(self):
        with pytest.raises(ValidationError):
            TelemetryPoint(latitude=91, longitude=0, recorded_at="T1")
        with pytest.raises(ValidationError):
            TelemetryPoint(latitude=0, longitude=-181, recorded_at="T1")

    def test_is_immutable(self):
        point = TelemetryPoint(latitude=1, longitude=2, recorded_at="T1")
        with pytest.raises(ValidationError):
            point.latitude = 3


class TestTrackingModels:

    def test_new_route_request_omits_route_id(self):
        request = TrackingSubmitRequest(
            start_new_route=True,
            points=[TelemetryPoint(latitude=1, longitude=2, recorded_at="T1")],
        )
        wire = request.to_wire()
        assert "routeId" not in wire
        assert wire["startNewRoute"] is True
        assert wire["points"][0]["recordedAt"] == "T1"

    def test_continuing_request_carries_route_id(self):
        request = TrackingSubmitRequest(route_id=42, points=[])
        assert request.to_wire() == {"routeId": 42, "startNewRoute": False, "points": []}

    def test_response_parses_camel_case(self):
        response = TrackingSubmitResponse.model_validate(
            {"routeId": 42, "createdPoints": 3, "routeStatus": "COMPLETED"}
        )
        assert response.route_id == 42
        assert response.created_points == 3
        assert response.route_status == RouteStatus.COMPLETED

    def test_token_response_requires_access_token(self):
        with pytest.raises(ValidationError):
            TokenRefreshResponse.model_validate({"refreshToken": "r"})
        tokens = TokenRefreshResponse.model_validate({"accessToken": "a"})
        assert tokens.refresh_token is None


class TestUnwrapEnvelope:

    def test_plain_body_is_returned_unchanged(self):
        assert unwrap_envelope({"routeId": 1}) == (True, {"routeId": 1}, None)

    def test_successful_envelope(self):
        ok, data, message = unwrap_envelope({"ok": True, "data": {"routeId": 7}})
        assert ok is True
        assert data == {"routeId": 7}
        assert message is None

    def test_failed_envelope_without_data(self):
        ok, data, message = unwrap_envelope({"ok": False, "message": "route closed"})
        assert ok is False
        assert data is None
        assert message == "route closed"

    def test_non_dict_body(self):
        assert unwrap_envelope(None) == (True, None, None)
