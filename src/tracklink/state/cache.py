"""Latest telemetry/status cache."""

from __future__ import annotations

from typing import Any

from tracklink.models.snapshots import StatusSnapshot, TelemetrySnapshot


class TelemetryCache:
    """Last-known values per device, independent of durable persistence.

    Two independent maps; every write replaces the device's previous snapshot.
    Snapshots are frozen models, so readers can hold them without copying.
    Memory grows with the number of distinct devices, not with event volume.
    """

    def __init__(self) -> None:
        self._telemetry: dict[str, TelemetrySnapshot] = {}
        self._status: dict[str, StatusSnapshot] = {}

    def record_telemetry(
        self,
        device_id: str,
        lat: float,
        lon: float,
        session_id: int | None,
        device_ts: int | None,
        server_ts: int,
    ) -> TelemetrySnapshot:
        snapshot = TelemetrySnapshot(
            device_id=device_id,
            lat=lat,
            lon=lon,
            session_id=session_id,
            device_ts=device_ts,
            server_ts=server_ts,
        )
        self._telemetry[device_id] = snapshot
        return snapshot

    def record_status(self, device_id: str, fields: dict[str, Any], server_ts: int) -> StatusSnapshot:
        snapshot = StatusSnapshot(device_id=device_id, fields=dict(fields), server_ts=server_ts)
        self._status[device_id] = snapshot
        return snapshot

    def read_telemetry(self, device_id: str) -> TelemetrySnapshot | None:
        return self._telemetry.get(device_id)

    def read_status(self, device_id: str) -> StatusSnapshot | None:
        return self._status.get(device_id)

    def devices(self) -> list[str]:
        """Devices with any cached telemetry or status, sorted."""
        return sorted(self._telemetry.keys() | self._status.keys())
