"""
Route Uplink - durable, single-flight upload of tracking points.
"""
from route_uplink.schemas import EventType, RouteStatus, TelemetryPoint
from route_uplink.service import UplinkService

__all__ = ["EventType", "RouteStatus", "TelemetryPoint", "UplinkService"]
__version__ = "1.0.0"
