"""
Error taxonomy for the upload pipeline.

None of these ever reach a producer: the queue store, session coordinator
and scheduler catch them at their boundaries, log, and retry later.
"""
from typing import Optional


class UplinkError(Exception):
    """Base class for pipeline errors."""


class PersistenceError(UplinkError):
    """Read or write against the local store failed."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} {key!r} failed{detail}")


class DeliveryError(UplinkError):
    """A submission failed. status 0 means no HTTP response was received."""

    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}" if status else f"network error: {message}")

    @property
    def is_network(self) -> bool:
        return self.status == 0

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


class AuthExhausted(UplinkError):
    """Token refresh attempts reached their bound."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"token refresh exhausted after {attempts} attempts")


class WatchdogTimeout(UplinkError):
    """A flush produced no outcome within its time budget."""

    def __init__(self, elapsed_s: float, budget_s: float):
        self.elapsed_s = elapsed_s
        self.budget_s = budget_s
        super().__init__(f"flush stuck for {elapsed_s:.1f}s (budget {budget_s:.1f}s)")
