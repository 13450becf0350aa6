from __future__ import annotations

import pytest
from pydantic import ValidationError

from tracklink.models import (
    DeviceCommand,
    DeviceRequest,
    HistoryRequest,
    StartSessionRequest,
    StatusReport,
    TelemetryReport,
    age_seconds,
)


def test_telemetry_report_accepts_field_names() -> None:
    report = TelemetryReport(device_id="esp32-001", lat=1.0, lon=2.0)

    assert report.session_id_hint is None
    assert report.kind == "telemetry"
    assert StatusReport.kind == "status"


def test_telemetry_report_long_aliases() -> None:
    report = TelemetryReport.model_validate({"device_id": "d1", "latitude": 1, "lng": 2, "device_ts": 9})

    assert (report.lat, report.lon, report.device_ts) == (1.0, 2.0, 9)


def test_start_request_blank_title_is_none() -> None:
    request = StartSessionRequest.model_validate({"deviceId": " esp32-001 ", "title": "   "})

    assert request.device_id == "esp32-001"
    assert request.title is None


def test_device_request_requires_id() -> None:
    with pytest.raises(ValidationError, match="deviceId required"):
        DeviceRequest.model_validate({"deviceId": ""})


def test_history_request_parses_query_strings() -> None:
    request = HistoryRequest.model_validate({"sessionId": "12", "limit": "50"})

    assert (request.session_id, request.limit) == (12, 50)
    with pytest.raises(ValidationError):
        HistoryRequest.model_validate({"sessionId": "12", "limit": "0"})


@pytest.mark.parametrize("payload", [{}, {"sessionId": "abc"}, {"sessionId": 0}, {"sessionId": None}])
def test_history_request_requires_session_id(payload: dict[str, object]) -> None:
    with pytest.raises(ValidationError, match="sessionId required"):
        HistoryRequest.model_validate(payload)


def test_device_command_serializes_with_wire_names() -> None:
    command = DeviceCommand.model_validate({"cmd": "START", "sessionId": 3})

    assert command.to_json() == '{"cmd":"START","sessionId":3}'


def test_age_seconds_never_negative() -> None:
    assert age_seconds(10_500, 1_000) == 9
    assert age_seconds(1_000, 5_000) == 0
