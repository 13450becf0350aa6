from __future__ import annotations

import pytest
from pydantic import ValidationError

from tracklink.state.cache import TelemetryCache


def test_telemetry_replaces_previous_snapshot() -> None:
    cache = TelemetryCache()

    cache.record_telemetry("esp32-001", 1.0, 2.0, None, None, 100)
    cache.record_telemetry("esp32-001", 3.0, 4.0, 7, 55, 200)

    snapshot = cache.read_telemetry("esp32-001")
    assert snapshot is not None
    assert (snapshot.lat, snapshot.lon, snapshot.session_id, snapshot.device_ts) == (3.0, 4.0, 7, 55)
    assert snapshot.server_ts == 200


def test_status_and_telemetry_are_independent() -> None:
    cache = TelemetryCache()

    cache.record_status("esp32-001", {"battery": 87}, 100)

    assert cache.read_telemetry("esp32-001") is None
    status = cache.read_status("esp32-001")
    assert status is not None
    assert status.fields == {"battery": 87}
    assert cache.devices() == ["esp32-001"]


def test_status_fields_are_copied() -> None:
    cache = TelemetryCache()
    fields = {"battery": 87}

    cache.record_status("esp32-001", fields, 100)
    fields["battery"] = 1

    status = cache.read_status("esp32-001")
    assert status is not None and status.fields["battery"] == 87


def test_snapshots_are_frozen() -> None:
    cache = TelemetryCache()
    snapshot = cache.record_telemetry("esp32-001", 1.0, 2.0, None, None, 100)

    with pytest.raises(ValidationError):
        snapshot.lat = 5.0  # type: ignore[misc]


def test_unknown_device_reads_none() -> None:
    cache = TelemetryCache()

    assert cache.read_telemetry("nope") is None
    assert cache.read_status("nope") is None
    assert cache.devices() == []
