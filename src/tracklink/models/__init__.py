"""Data models for reports, sessions, snapshots and commands."""

from tracklink.models.commands import CommandDispatch, CommandType, DeviceCommand
from tracklink.models.reports import Report, ReportKind, StatusReport, TelemetryReport
from tracklink.models.requests import DeviceRequest, HistoryRequest, StartSessionRequest
from tracklink.models.session import Coordinate, RecordingSession
from tracklink.models.snapshots import LatestPosition, StatusSnapshot, TelemetrySnapshot, age_seconds

__all__ = [
    "CommandDispatch",
    "CommandType",
    "Coordinate",
    "DeviceCommand",
    "DeviceRequest",
    "HistoryRequest",
    "LatestPosition",
    "RecordingSession",
    "Report",
    "ReportKind",
    "StartSessionRequest",
    "StatusReport",
    "StatusSnapshot",
    "TelemetryReport",
    "TelemetrySnapshot",
    "age_seconds",
]
