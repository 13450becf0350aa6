"""tracklink - Device session & telemetry coordinator over MQTT and HTTP."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tracklink")
except PackageNotFoundError:
    __version__ = "0+local"
from tracklink.config import BrokerEndpoint, TrackerConfig
from tracklink.exceptions import (
    MalformedReportError,
    SessionNotFoundError,
    TrackerConfigError,
    TrackerError,
    TrackerStoreError,
    TrackerTransportError,
)
from tracklink.models import (
    CommandDispatch,
    CommandType,
    Coordinate,
    DeviceCommand,
    LatestPosition,
    RecordingSession,
    StatusReport,
    StatusSnapshot,
    TelemetryReport,
    TelemetrySnapshot,
)
from tracklink.service import SessionChange, SessionListing, TrackerService

__all__ = [
    "__version__",
    "BrokerEndpoint",
    "CommandDispatch",
    "CommandType",
    "Coordinate",
    "DeviceCommand",
    "LatestPosition",
    "MalformedReportError",
    "RecordingSession",
    "SessionChange",
    "SessionListing",
    "SessionNotFoundError",
    "StatusReport",
    "StatusSnapshot",
    "TelemetryReport",
    "TelemetrySnapshot",
    "TrackerConfig",
    "TrackerConfigError",
    "TrackerError",
    "TrackerService",
    "TrackerStoreError",
    "TrackerTransportError",
]
