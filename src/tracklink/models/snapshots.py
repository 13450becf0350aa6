"""Cache-only snapshot models.

These are never durably persisted. Each new report for a device replaces the
previous snapshot wholesale.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def age_seconds(now_ms: int, server_ts: int) -> int:
    """Whole seconds elapsed between *server_ts* and *now_ms* (both epoch ms)."""
    return max(0, (now_ms - server_ts) // 1000)


class TelemetrySnapshot(BaseModel):
    """Latest accepted position of a device (the "live marker")."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    lat: float
    lon: float
    session_id: int | None = None
    device_ts: int | None = None
    server_ts: int


class StatusSnapshot(BaseModel):
    """Latest status payload of a device, kept verbatim."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    server_ts: int


class LatestPosition(BaseModel):
    """Answer to a latest-position query.

    ``source`` tells whether the value came from the in-memory cache or from
    the most recent durable coordinate.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    lat: float
    lon: float
    session_id: int | None = None
    device_ts: int | None = None
    server_ts: int
    age_seconds: int
    source: Literal["memory", "db"]
