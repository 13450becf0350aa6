from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import pytest

from tracklink._store import SqliteStore
from tracklink.exceptions import TrackerStoreError
from tracklink.ingestion.pipeline import IngestionPipeline, IngestOutcome, IngestSource
from tracklink.models.reports import TelemetryReport
from tracklink.models.session import Coordinate
from tracklink.state.cache import TelemetryCache
from tracklink.state.registry import SessionRegistry

_TOPIC = "shiftmatic/test/esp32-001/telemetry"


def _clock() -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC)


def _pipeline(store: object, registry: SessionRegistry, **kwargs: object) -> tuple[IngestionPipeline, TelemetryCache]:
    cache = TelemetryCache()
    pipeline = IngestionPipeline(
        registry=registry,
        cache=cache,
        store=store,  # type: ignore[arg-type]
        clock=_clock,
        **kwargs,  # type: ignore[arg-type]
    )
    return pipeline, cache


class _FailingStore:
    """Session reads work; coordinate writes fail."""

    async def list_active_sessions(self) -> list[object]:
        return []

    async def insert_coordinate(self, *_args: object) -> Coordinate:
        raise TrackerStoreError("disk I/O error", operation="insert_coordinate")


class _BlockingStore:
    """Coordinate writes park until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0

    async def insert_coordinate(
        self,
        session_id: int,
        device_id: str,
        lat: float,
        lon: float,
        device_ts: int | None,
        server_ts: int,
    ) -> Coordinate:
        self.calls += 1
        await self.release.wait()
        return Coordinate(
            id=self.calls,
            session_id=session_id,
            device_id=device_id,
            lat=lat,
            lon=lon,
            device_ts=device_ts,
            server_ts=server_ts,
            created_at=_clock(),
        )


class _StaticRegistry:
    def __init__(self, active: dict[str, int]) -> None:
        self._active = active

    async def resolve_active(self, device_id: str) -> int | None:
        return self._active.get(device_id)


@pytest.mark.asyncio
async def test_no_session_updates_cache_only() -> None:
    async with SqliteStore(":memory:") as store:
        pipeline, cache = _pipeline(store, SessionRegistry(store))

        result = await pipeline.ingest_message(_TOPIC, b'{"id":"esp32-001","la":43.7,"lo":-79.4,"t":1000}')
        await pipeline.drain()

        latest = await store.latest_coordinate("esp32-001")

    assert result.outcome == IngestOutcome.CACHED_ONLY
    snapshot = cache.read_telemetry("esp32-001")
    assert snapshot is not None
    assert (snapshot.lat, snapshot.lon, snapshot.session_id) == (43.7, -79.4, None)
    assert snapshot.server_ts == int(_clock().timestamp() * 1000)
    assert latest is None


@pytest.mark.asyncio
async def test_active_session_persists_coordinate() -> None:
    async with SqliteStore(":memory:") as store:
        registry = SessionRegistry(store)
        session = await registry.start("esp32-001", "trip1")
        pipeline, _cache = _pipeline(store, registry)

        result = await pipeline.ingest_message(_TOPIC, b'{"id":"esp32-001","la":43.7,"lo":-79.4,"t":1000}')
        await pipeline.drain()

        points = await store.list_coordinates(session.id, 10)

    assert result.outcome == IngestOutcome.PERSIST_QUEUED
    assert result.session_id == session.id
    assert [(p.lat, p.lon, p.device_ts) for p in points] == [(43.7, -79.4, 1000)]


@pytest.mark.asyncio
async def test_positive_hint_wins_over_active_session() -> None:
    async with SqliteStore(":memory:") as store:
        registry = SessionRegistry(store)
        old = await registry.start("esp32-001", "old")
        current = await registry.start("esp32-001", "current")
        pipeline, cache = _pipeline(store, registry)

        payload = f'{{"deviceId":"esp32-001","lat":1,"lon":2,"sessionId":{old.id}}}'
        result = await pipeline.ingest_message(_TOPIC, payload)
        await pipeline.drain()

        old_points = await store.list_coordinates(old.id, 10)
        current_points = await store.list_coordinates(current.id, 10)

    assert result.session_id == old.id
    assert len(old_points) == 1
    assert current_points == []
    snapshot = cache.read_telemetry("esp32-001")
    assert snapshot is not None and snapshot.session_id == old.id


@pytest.mark.asyncio
async def test_status_report_cached_not_persisted() -> None:
    store = _BlockingStore()
    pipeline, cache = _pipeline(store, _StaticRegistry({}))  # type: ignore[arg-type]

    result = await pipeline.ingest_message(
        "shiftmatic/test/esp32-001/status",
        b'{"deviceId":"esp32-001","battery":87}',
    )

    assert result.outcome == IngestOutcome.STATUS_CACHED
    status = cache.read_status("esp32-001")
    assert status is not None and status.fields["battery"] == 87
    assert store.calls == 0


@pytest.mark.asyncio
async def test_malformed_message_rejected_without_state_change() -> None:
    store = _BlockingStore()
    pipeline, cache = _pipeline(store, _StaticRegistry({"esp32-001": 1}))  # type: ignore[arg-type]

    result = await pipeline.ingest_message(_TOPIC, b'{"id":"esp32-001","la":"nope","lo":2}')

    assert result.outcome == IngestOutcome.REJECTED
    assert cache.devices() == []
    assert pipeline.pending_writes == 0


@pytest.mark.asyncio
async def test_writes_beyond_cap_are_dropped_not_queued() -> None:
    store = _BlockingStore()
    pipeline, cache = _pipeline(
        store,
        _StaticRegistry({"esp32-001": 1}),  # type: ignore[arg-type]
        max_pending_writes=2,
    )
    report = TelemetryReport(device_id="esp32-001", lat=1.0, lon=2.0)

    outcomes = [(await pipeline.ingest_report(report, source=IngestSource.HTTP)).outcome for _ in range(3)]
    await asyncio.sleep(0)

    assert outcomes == [IngestOutcome.PERSIST_QUEUED, IngestOutcome.PERSIST_QUEUED, IngestOutcome.PERSIST_DROPPED]
    assert pipeline.pending_writes == 2
    assert pipeline.dropped_writes == 1
    # The live cache is updated even when the write is dropped.
    assert cache.read_telemetry("esp32-001") is not None

    store.release.set()
    await pipeline.drain()
    assert pipeline.pending_writes == 0
    assert store.calls == 2


@pytest.mark.asyncio
async def test_store_failure_is_logged_and_swallowed(caplog: pytest.LogCaptureFixture) -> None:
    store = _FailingStore()
    pipeline, cache = _pipeline(store, _StaticRegistry({"esp32-001": 5}))  # type: ignore[arg-type]

    with caplog.at_level(logging.ERROR, logger="tracklink.ingestion.pipeline"):
        result = await pipeline.ingest_message(_TOPIC, b'{"id":"esp32-001","la":1,"lo":2}')
        await pipeline.drain()

    assert result.outcome == IngestOutcome.PERSIST_QUEUED
    assert pipeline.failed_writes == 1
    assert "Coordinate insert failed" in caplog.text
    assert cache.read_telemetry("esp32-001") is not None


@pytest.mark.asyncio
async def test_hint_for_unknown_session_fails_write_only() -> None:
    async with SqliteStore(":memory:") as store:
        pipeline, cache = _pipeline(store, SessionRegistry(store))

        result = await pipeline.ingest_message(_TOPIC, b'{"id":"esp32-001","la":1,"lo":2,"sid":999}')
        await pipeline.drain()

    assert result.session_id == 999
    assert pipeline.failed_writes == 1
    assert cache.read_telemetry("esp32-001") is not None
