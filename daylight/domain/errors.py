from __future__ import annotations


class DaylightError(Exception):
    """Base class for errors raised by the daemon."""


class ConfigError(DaylightError):
    """Schedule file or settings are unusable; fatal at startup."""


class ScheduleError(DaylightError):
    """A day pattern cannot be resolved for the requested time."""


class StoreError(DaylightError):
    """The state store failed to read or write."""


class GatewayError(DaylightError):
    """The lighting bridge could not be reached or answered badly."""


class UnreachableError(GatewayError):
    """The bridge accepted the write but the device itself did not respond."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"device {resource_id} is unreachable")
        self.resource_id = resource_id
