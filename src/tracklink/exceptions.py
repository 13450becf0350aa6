"""Custom exception hierarchy for tracklink."""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for all tracklink errors."""


class TrackerConfigError(TrackerError):
    """Invalid or missing configuration."""


class TrackerStoreError(TrackerError):
    """Durable store failure (connection, constraint, query)."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)


class TrackerTransportError(TrackerError):
    """MQTT transport failure (not connected, publish rejected)."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class MalformedReportError(TrackerError):
    """Inbound report could not be normalized.

    Raised for unknown topic suffixes, payloads that are not JSON objects,
    a missing device id, or coordinates that are not finite numbers.
    """

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class SessionNotFoundError(TrackerError):
    """No active recording session exists for the device.

    This is a normal, user-facing condition (e.g. stopping twice), not a
    fault.
    """

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"no active session for device {device_id!r}")
