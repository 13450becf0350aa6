"""High-level tracker service: the query facade over the coordinator core."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from tracklink._mqtt import MqttMessage, TrackerMqttRuntime
from tracklink._redact import redact_url
from tracklink._store import DurableStore, SqliteStore
from tracklink.commands import CommandDispatcher
from tracklink.config import TrackerConfig
from tracklink.exceptions import TrackerStoreError
from tracklink.ingestion.messages import parse_telemetry
from tracklink.ingestion.pipeline import IngestionPipeline, IngestResult, IngestSource
from tracklink.models.commands import CommandDispatch
from tracklink.models.requests import DeviceRequest, HistoryRequest, StartSessionRequest
from tracklink.models.session import Coordinate, RecordingSession
from tracklink.models.snapshots import LatestPosition, StatusSnapshot, age_seconds
from tracklink.state.cache import TelemetryCache
from tracklink.state.registry import SessionRegistry

_logger = logging.getLogger(__name__)


def _now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class SessionChange:
    """Result of a start/stop: the durable row plus the best-effort command."""

    session: RecordingSession
    command: CommandDispatch


@dataclass(frozen=True, slots=True)
class SessionListing:
    device_id: str
    active_session_id: int | None
    sessions: list[RecordingSession]


class TrackerService:
    """Device session & telemetry coordinator.

    Usage::

        async with TrackerService(TrackerConfig.from_env()) as service:
            session = await service.start_session("esp32-001", "trip1")
            latest = await service.get_latest("esp32-001")
    """

    def __init__(
        self,
        config: TrackerConfig,
        *,
        store: DurableStore | None = None,
    ) -> None:
        self._config = config
        self._external_store = store is not None
        self._store: DurableStore = store if store is not None else SqliteStore(config.database_path)
        self._cache = TelemetryCache()
        self._registry = SessionRegistry(self._store)
        self._dispatcher = CommandDispatcher(config.topic_prefix)
        self._pipeline = IngestionPipeline(
            registry=self._registry,
            cache=self._cache,
            store=self._store,
            max_pending_writes=config.max_pending_writes,
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._mqtt_runtime: TrackerMqttRuntime | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TrackerService:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Open the store, load active sessions, then connect MQTT."""
        self._loop = asyncio.get_running_loop()
        if isinstance(self._store, SqliteStore):
            await self._store.open()
        await self.reconcile()
        if self._config.mqtt_enabled:
            await self._start_mqtt()

    async def close(self) -> None:
        await self._stop_mqtt()
        await self._pipeline.drain(timeout=5.0)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if isinstance(self._store, SqliteStore) and not self._external_store:
            await self._store.close()
        self._loop = None

    # ------------------------------------------------------------------
    # Components (exposed for the HTTP layer and tests)
    # ------------------------------------------------------------------

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def cache(self) -> TelemetryCache:
        return self._cache

    @property
    def pipeline(self) -> IngestionPipeline:
        return self._pipeline

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    @property
    def mqtt_connected(self) -> bool:
        return self._mqtt_runtime is not None and self._mqtt_runtime.is_connected

    # ------------------------------------------------------------------
    # MQTT wiring
    # ------------------------------------------------------------------

    async def _start_mqtt(self) -> None:
        loop = self._require_loop()
        endpoint = self._config.broker_endpoint()
        runtime = TrackerMqttRuntime(
            loop=loop,
            on_message=self._on_mqtt_message,
            on_connected=self._on_mqtt_connected,
            keepalive=self._config.mqtt_keepalive,
        )
        _logger.info("Connecting MQTT broker=%s", redact_url(self._config.mqtt_broker))
        await loop.run_in_executor(
            None,
            lambda: runtime.start(
                endpoint,
                client_id=self._config.mqtt_client_id,
                subscriptions=self._config.subscriptions,
            ),
        )
        self._mqtt_runtime = runtime
        self._dispatcher.attach(runtime)

    async def _stop_mqtt(self) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        self._dispatcher.attach(None)
        if runtime is None:
            return
        try:
            await self._require_loop().run_in_executor(None, runtime.stop)
        except Exception:
            _logger.debug("MQTT runtime stop failed", exc_info=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = self._require_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    def _on_mqtt_message(self, message: MqttMessage) -> None:
        self._spawn(self._pipeline.ingest_message(message.topic, message.payload), name="ingest")

    def _on_mqtt_connected(self) -> None:
        # Reconnect is a recovery barrier: the cache may have missed session
        # changes made while we were offline.
        self._spawn(self.reconcile(), name="reconcile")

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    # ------------------------------------------------------------------
    # Facade operations
    # ------------------------------------------------------------------

    async def reconcile(self) -> int:
        """Reload the active-session cache; failures are logged, not raised."""
        try:
            return await self._registry.reconcile()
        except TrackerStoreError as exc:
            _logger.error("Active session reload failed: %s", exc)
            return 0

    async def health(self) -> dict[str, Any]:
        """Store round-trip. Raises :class:`TrackerStoreError` when the store is down."""
        db_now = await self._store.ping()
        return {
            "status": "UP",
            "now": _now_ms(),
            "dbNow": db_now,
            "mqttConnected": self.mqtt_connected,
            "pendingWrites": self._pipeline.pending_writes,
        }

    async def get_latest(self, device_id: str) -> LatestPosition | None:
        """Latest position: live cache first, newest durable coordinate otherwise."""
        request = DeviceRequest(device_id=device_id)
        now_ms = _now_ms()

        cached = self._cache.read_telemetry(request.device_id)
        if cached is not None:
            return LatestPosition(
                **cached.model_dump(),
                age_seconds=age_seconds(now_ms, cached.server_ts),
                source="memory",
            )

        row = await self._store.latest_coordinate(request.device_id)
        if row is None:
            return None
        return LatestPosition(
            device_id=row.device_id,
            lat=row.lat,
            lon=row.lon,
            session_id=row.session_id,
            device_ts=row.device_ts,
            server_ts=row.server_ts,
            age_seconds=age_seconds(now_ms, row.server_ts),
            source="db",
        )

    async def get_status(self, device_id: str) -> StatusSnapshot | None:
        request = DeviceRequest(device_id=device_id)
        return self._cache.read_status(request.device_id)

    async def start_session(self, device_id: str, title: str | None = None) -> SessionChange:
        """Start recording; the previous active session (if any) is ended."""
        request = StartSessionRequest(device_id=device_id, title=title)
        session = await self._registry.start(request.device_id, request.title)
        command = self._dispatcher.send_start(request.device_id, session.id)
        return SessionChange(session=session, command=command)

    async def stop_session(self, device_id: str) -> SessionChange:
        """Stop recording. Raises :class:`SessionNotFoundError` when nothing is active."""
        request = DeviceRequest(device_id=device_id)
        session = await self._registry.stop(request.device_id)
        command = self._dispatcher.send_stop(request.device_id, session.id)
        return SessionChange(session=session, command=command)

    async def list_sessions(self, device_id: str) -> SessionListing:
        request = DeviceRequest(device_id=device_id)
        sessions = await self._store.list_sessions(request.device_id, self._config.sessions_limit)
        return SessionListing(
            device_id=request.device_id,
            active_session_id=self._registry.active_session_id(request.device_id),
            sessions=sessions,
        )

    async def get_history(self, session_id: int, limit: int | None = None) -> list[Coordinate]:
        """Points of a session in capture order, at most ``history_limit_max``."""
        request = HistoryRequest(session_id=session_id, limit=limit)
        effective = min(request.limit or self._config.history_limit, self._config.history_limit_max)
        return await self._store.list_coordinates(request.session_id, effective)

    async def ingest_http_telemetry(
        self,
        device_id: str,
        lat: Any,
        lon: Any,
        ts: Any = None,
        session_hint: Any = None,
    ) -> IngestResult:
        """Submit telemetry over HTTP through the same pipeline as MQTT.

        Raises :class:`MalformedReportError` for the caller to report, where
        the MQTT channel would silently drop the message.
        """
        report = parse_telemetry(
            {"deviceId": device_id, "lat": lat, "lon": lon, "ts": ts, "sessionId": session_hint},
        )
        return await self._pipeline.ingest_report(report, source=IngestSource.HTTP)

