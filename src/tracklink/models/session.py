"""Durable row models: recording sessions and coordinates."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class RecordingSession(BaseModel):
    """A bounded recording interval for one device.

    At most one session per device has ``is_active=True`` at any instant.
    Once ended (``is_active=False``, ``ended_at`` set) a row never becomes
    active again; a device re-enters recording under a new id.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    device_id: str
    title: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    is_active: bool


class Coordinate(BaseModel):
    """A persisted trajectory point. Immutable once written."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    session_id: int
    device_id: str
    lat: float
    lon: float
    device_ts: int | None = None
    server_ts: int
    created_at: datetime
