"""Inbound message normalization.

Turns a raw ``(topic, payload)`` pair from the transport into one canonical
report. Classification is by topic suffix; the device id always comes from the
payload.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from tracklink._redact import redact_for_log
from tracklink.exceptions import MalformedReportError
from tracklink.models.reports import Report, ReportKind, StatusReport, TelemetryReport

_logger = logging.getLogger(__name__)

_SUFFIXES: dict[str, ReportKind] = {
    "/telemetry": ReportKind.TELEMETRY,
    "/status": ReportKind.STATUS,
}


def classify_topic(topic: str) -> ReportKind | None:
    """Return the report kind implied by the topic suffix, if any."""
    for suffix, kind in _SUFFIXES.items():
        if topic.endswith(suffix):
            return kind
    return None


def decode_payload(payload: bytes | str) -> dict[str, Any]:
    """Parse a payload into a JSON object."""
    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        parsed = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedReportError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedReportError("payload is not a JSON object")
    return parsed


def parse_telemetry(obj: dict[str, Any]) -> TelemetryReport:
    try:
        return TelemetryReport.model_validate(obj)
    except ValidationError as exc:
        raise MalformedReportError(f"invalid telemetry: {_summarize(exc)}") from exc


def parse_status(obj: dict[str, Any]) -> StatusReport:
    try:
        return StatusReport.from_payload(obj)
    except ValidationError as exc:
        raise MalformedReportError(f"invalid status: {_summarize(exc)}") from exc


def parse_report(topic: str, payload: bytes | str) -> Report:
    """Normalize one inbound message, raising :class:`MalformedReportError` on rejection."""
    kind = classify_topic(topic)
    if kind is None:
        raise MalformedReportError(f"unrecognized topic {topic!r}", topic=topic)

    try:
        obj = decode_payload(payload)
        if kind == ReportKind.STATUS:
            return parse_status(obj)
        return parse_telemetry(obj)
    except MalformedReportError as exc:
        exc.topic = topic
        raise


def normalize_message(topic: str, payload: bytes | str) -> Report | None:
    """Normalize one inbound message; rejections are logged and yield ``None``."""
    try:
        return parse_report(topic, payload)
    except MalformedReportError as exc:
        _logger.warning(
            "Rejected message topic=%s reason=%s payload=%s",
            topic,
            exc,
            _log_preview(payload),
        )
        return None


def _log_preview(payload: bytes | str) -> Any:
    """Redacted view of a payload: per-key when it is a JSON object, truncated text otherwise."""
    try:
        return redact_for_log(decode_payload(payload), max_string=256)
    except MalformedReportError:
        return redact_for_log(payload, max_string=256)


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}" for err in exc.errors()
    )
