"""Ingestion pipeline shared by the MQTT and HTTP channels.

Every inbound report takes the same path:

- normalize (rejections are logged and dropped)
- status reports replace the device's cached status
- telemetry resolves an effective session (positive device hint first, then
  the registry), always updates the live cache, and is persisted as a
  coordinate only when a session was found

Coordinate writes run as background tasks so a slow store never holds up the
stream. The number in flight is capped; past the cap a write is dropped, not
queued.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from tracklink._store import DurableStore
from tracklink.exceptions import TrackerStoreError
from tracklink.ingestion.messages import normalize_message
from tracklink.models.reports import Report, StatusReport, TelemetryReport
from tracklink.state.cache import TelemetryCache
from tracklink.state.registry import SessionRegistry

_logger = logging.getLogger(__name__)


class IngestSource(enum.StrEnum):
    MQTT = "mqtt"
    HTTP = "http"


class IngestOutcome(enum.StrEnum):
    REJECTED = "rejected"
    STATUS_CACHED = "status_cached"
    CACHED_ONLY = "cached_only"
    PERSIST_QUEUED = "persist_queued"
    PERSIST_DROPPED = "persist_dropped"


@dataclass(frozen=True, slots=True)
class IngestResult:
    outcome: IngestOutcome
    device_id: str | None = None
    session_id: int | None = None


def _now_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IngestionPipeline:
    """Normalizer → registry → cache → conditional durable write."""

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        cache: TelemetryCache,
        store: DurableStore,
        max_pending_writes: int = 256,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._cache = cache
        self._store = store
        self._max_pending_writes = max_pending_writes
        self._clock = clock
        self._pending: set[asyncio.Task[None]] = set()
        self._dropped_writes = 0
        self._failed_writes = 0

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    @property
    def dropped_writes(self) -> int:
        """Coordinates dropped because the in-flight cap was reached."""
        return self._dropped_writes

    @property
    def failed_writes(self) -> int:
        """Coordinates whose store write raised."""
        return self._failed_writes

    async def ingest_message(self, topic: str, payload: bytes | str) -> IngestResult:
        """Entry point for transport-delivered messages."""
        report = normalize_message(topic, payload)
        if report is None:
            return IngestResult(IngestOutcome.REJECTED)
        return await self.ingest_report(report, source=IngestSource.MQTT)

    async def ingest_report(self, report: Report, *, source: IngestSource = IngestSource.MQTT) -> IngestResult:
        """Entry point for already-normalized reports (HTTP and MQTT alike)."""
        server_ts = _now_ms(self._clock())

        if isinstance(report, StatusReport):
            self._cache.record_status(report.device_id, report.payload, server_ts)
            return IngestResult(IngestOutcome.STATUS_CACHED, device_id=report.device_id)

        return await self._ingest_telemetry(report, source=source, server_ts=server_ts)

    async def _ingest_telemetry(self, report: TelemetryReport, *, source: IngestSource, server_ts: int) -> IngestResult:
        device_id = report.device_id

        # A positive device hint wins over the registry, even if it names a
        # session that is no longer the active one.
        session_id = report.session_id_hint
        if session_id is None:
            session_id = await self._registry.resolve_active(device_id)

        self._cache.record_telemetry(
            device_id,
            report.lat,
            report.lon,
            session_id,
            report.device_ts,
            server_ts,
        )

        if session_id is None:
            _logger.debug(
                "Telemetry cached only (no active session) source=%s device=%s lat=%s lon=%s",
                source,
                device_id,
                report.lat,
                report.lon,
            )
            return IngestResult(IngestOutcome.CACHED_ONLY, device_id=device_id)

        if len(self._pending) >= self._max_pending_writes:
            self._dropped_writes += 1
            _logger.warning(
                "Coordinate dropped (%d writes in flight) device=%s session_id=%s",
                len(self._pending),
                device_id,
                session_id,
            )
            return IngestResult(IngestOutcome.PERSIST_DROPPED, device_id=device_id, session_id=session_id)

        task = asyncio.create_task(self._persist(report, session_id, server_ts, source))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return IngestResult(IngestOutcome.PERSIST_QUEUED, device_id=device_id, session_id=session_id)

    async def _persist(self, report: TelemetryReport, session_id: int, server_ts: int, source: IngestSource) -> None:
        try:
            row = await self._store.insert_coordinate(
                session_id,
                report.device_id,
                report.lat,
                report.lon,
                report.device_ts,
                server_ts,
            )
        except TrackerStoreError as exc:
            self._failed_writes += 1
            _logger.error(
                "Coordinate insert failed device=%s session_id=%s: %s",
                report.device_id,
                session_id,
                exc,
            )
            return
        except Exception:
            self._failed_writes += 1
            _logger.exception("Coordinate insert raised device=%s session_id=%s", report.device_id, session_id)
            return
        _logger.debug(
            "Coordinate saved source=%s id=%s device=%s session_id=%s lat=%s lon=%s",
            source,
            row.id,
            row.device_id,
            row.session_id,
            row.lat,
            row.lon,
        )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight coordinate writes to finish."""
        pending = set(self._pending)
        if not pending:
            return
        _done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            _logger.warning("Drain timed out with %d coordinate write(s) in flight", len(not_done))
