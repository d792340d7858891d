"""Exceptions raised by monitoring services."""
from __future__ import annotations


class MonitoringError(RuntimeError):
    """Raised when a monitoring service operation fails."""


class InvalidOptionsError(MonitoringError):
    """Raised when a required service option is missing or malformed."""

    def __init__(self, option: str, reason: str) -> None:
        """Record the offending *option* and why it was rejected."""
        super().__init__(f"Invalid options: {option} {reason}")
        self.option = option
        self.reason = reason


class NonexistingEndpointError(MonitoringError):
    """Raised when removing a scrape target that is not configured."""

    def __init__(self, endpoint: str) -> None:
        """Record the unknown *endpoint* (scheme already stripped)."""
        super().__init__(f"Endpoint does not exist: {endpoint}")
        self.endpoint = endpoint


class ReloadFailedError(MonitoringError):
    """Raised when a service rejects or cannot receive a reload request."""

    def __init__(self, status: str) -> None:
        """Record the response *status* text or transport failure."""
        super().__init__(f"Reload failed: {status}")
        self.status = status


__all__ = [
    "InvalidOptionsError",
    "MonitoringError",
    "NonexistingEndpointError",
    "ReloadFailedError",
]
