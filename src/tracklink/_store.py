"""Durable store gateway backed by SQLite through aiosqlite."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import UTC, datetime
from typing import Any, Protocol

import aiosqlite

from tracklink.exceptions import TrackerStoreError
from tracklink.models.session import Coordinate, RecordingSession

_logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id   TEXT    NOT NULL,
    title       TEXT,
    started_at  TEXT    NOT NULL,
    ended_at    TEXT,
    is_active   INTEGER NOT NULL DEFAULT 1
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_sessions_one_active
    ON sessions(device_id) WHERE is_active = 1;
CREATE INDEX IF NOT EXISTS ix_sessions_device_started
    ON sessions(device_id, started_at DESC);

CREATE TABLE IF NOT EXISTS coordinates (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  INTEGER NOT NULL REFERENCES sessions(id),
    device_id   TEXT    NOT NULL,
    lat         REAL    NOT NULL,
    lon         REAL    NOT NULL,
    device_ts   INTEGER,
    server_ts   INTEGER NOT NULL,
    created_at  TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_coordinates_session
    ON coordinates(session_id, created_at);
CREATE INDEX IF NOT EXISTS ix_coordinates_device
    ON coordinates(device_id, created_at DESC);
"""

_SESSION_COLUMNS = "id, device_id, title, started_at, ended_at, is_active"
_COORDINATE_COLUMNS = "id, session_id, device_id, lat, lon, device_ts, server_ts, created_at"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime) -> str:
    # Fixed width so lexical ORDER BY on the TEXT column is chronological.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class DurableStore(Protocol):
    """Structural store interface consumed by the registry and pipeline.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`SqliteStore`) concrete.
    """

    async def insert_coordinate(
        self,
        session_id: int,
        device_id: str,
        lat: float,
        lon: float,
        device_ts: int | None,
        server_ts: int,
    ) -> Coordinate: ...

    async def deactivate_active_sessions(self, device_id: str) -> int: ...

    async def create_session(self, device_id: str, title: str | None = None) -> RecordingSession: ...

    async def start_session(self, device_id: str, title: str | None = None) -> RecordingSession: ...

    async def end_session(self, session_id: int) -> RecordingSession | None: ...

    async def find_active_session(self, device_id: str) -> RecordingSession | None: ...

    async def list_active_sessions(self) -> list[RecordingSession]: ...

    async def list_sessions(self, device_id: str, limit: int) -> list[RecordingSession]: ...

    async def list_coordinates(self, session_id: int, limit: int) -> list[Coordinate]: ...

    async def latest_coordinate(self, device_id: str) -> Coordinate | None: ...

    async def ping(self) -> str: ...


class SqliteStore:
    """SQLite implementation of :class:`DurableStore`.

    One connection is shared by the whole process. aiosqlite runs it on a
    worker thread, so every call here is a suspension point for the event
    loop. Writes, and the reads that decide which session is active, are
    serialized through an ``asyncio.Lock`` so the explicit transaction used by
    :meth:`start_session` never interleaves with them on the same connection.

    Usage::

        async with SqliteStore("tracker.db") as store:
            session = await store.start_session("esp32-001", "trip1")
    """

    def __init__(self, path: str, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._path = path
        self._clock = clock
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SqliteStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        """Connect and create the schema if needed."""
        if self._conn is not None:
            return
        async with self._guard("open"):
            conn = await aiosqlite.connect(self._path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.executescript(_SCHEMA)
        self._conn = conn
        _logger.info("Durable store opened path=%s", self._path)

    async def close(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is None:
            return
        await conn.close()
        _logger.debug("Durable store closed path=%s", self._path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise TrackerStoreError("Store not opened. Use 'async with SqliteStore(...) as store:'")
        return self._conn

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except aiosqlite.Error as exc:
            raise TrackerStoreError(f"{operation} failed: {exc}", operation=operation) from exc

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self._require_conn().execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self._require_conn().execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def _get_session(self, session_id: int) -> RecordingSession | None:
        row = await self._fetchone(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,))
        return RecordingSession.model_validate(dict(row)) if row is not None else None

    async def _deactivate(self, device_id: str, now: datetime) -> int:
        async with self._require_conn().execute(
            "UPDATE sessions SET is_active = 0, ended_at = ? WHERE device_id = ? AND is_active = 1",
            (_iso(now), device_id),
        ) as cursor:
            return cursor.rowcount

    async def _insert_session(self, device_id: str, title: str | None, now: datetime) -> int:
        async with self._require_conn().execute(
            "INSERT INTO sessions(device_id, title, started_at, is_active) VALUES (?, ?, ?, 1)",
            (device_id, title, _iso(now)),
        ) as cursor:
            session_id = cursor.lastrowid
        if session_id is None:
            raise TrackerStoreError("Session insert returned no row id", operation="create_session")
        return session_id

    async def _created_session(self, session_id: int) -> RecordingSession:
        session = await self._get_session(session_id)
        if session is None:
            raise TrackerStoreError(f"Session {session_id} vanished after insert", operation="create_session")
        return session

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_coordinate(
        self,
        session_id: int,
        device_id: str,
        lat: float,
        lon: float,
        device_ts: int | None,
        server_ts: int,
    ) -> Coordinate:
        """Persist one trajectory point and return the stored row."""
        async with self._write_lock, self._guard("insert_coordinate"):
            async with self._require_conn().execute(
                "INSERT INTO coordinates(session_id, device_id, lat, lon, device_ts, server_ts, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (session_id, device_id, lat, lon, device_ts, server_ts, _iso(self._clock())),
            ) as cursor:
                coordinate_id = cursor.lastrowid
            row = await self._fetchone(
                f"SELECT {_COORDINATE_COLUMNS} FROM coordinates WHERE id = ?",
                (coordinate_id,),
            )
        if row is None:
            raise TrackerStoreError("Coordinate vanished after insert", operation="insert_coordinate")
        return Coordinate.model_validate(dict(row))

    async def deactivate_active_sessions(self, device_id: str) -> int:
        """End every active session of *device_id*. Idempotent; returns rows changed."""
        async with self._write_lock, self._guard("deactivate_active_sessions"):
            return await self._deactivate(device_id, self._clock())

    async def create_session(self, device_id: str, title: str | None = None) -> RecordingSession:
        """Insert a new active session.

        Fails with :class:`TrackerStoreError` if the device already has an
        active session; callers wanting replace semantics use
        :meth:`start_session`.
        """
        async with self._write_lock, self._guard("create_session"):
            session_id = await self._insert_session(device_id, title, self._clock())
            return await self._created_session(session_id)

    async def start_session(self, device_id: str, title: str | None = None) -> RecordingSession:
        """Deactivate the device's active session and create a new one, atomically."""
        async with self._write_lock, self._guard("start_session"):
            conn = self._require_conn()
            now = self._clock()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                ended = await self._deactivate(device_id, now)
                session_id = await self._insert_session(device_id, title, now)
                await conn.execute("COMMIT")
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            if ended:
                _logger.debug("Deactivated %d previous session(s) device=%s", ended, device_id)
            return await self._created_session(session_id)

    async def end_session(self, session_id: int) -> RecordingSession | None:
        """End an active session.

        Returns the ended row, or ``None`` when no *active* session has that
        id (unknown id or already ended).
        """
        async with self._write_lock, self._guard("end_session"):
            async with self._require_conn().execute(
                "UPDATE sessions SET is_active = 0, ended_at = ? WHERE id = ? AND is_active = 1",
                (_iso(self._clock()), session_id),
            ) as cursor:
                changed = cursor.rowcount
            if not changed:
                return None
            return await self._get_session(session_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_active_session(self, device_id: str) -> RecordingSession | None:
        async with self._write_lock, self._guard("find_active_session"):
            row = await self._fetchone(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE device_id = ? AND is_active = 1 "
                "ORDER BY started_at DESC, id DESC LIMIT 1",
                (device_id,),
            )
        return RecordingSession.model_validate(dict(row)) if row is not None else None

    async def list_active_sessions(self) -> list[RecordingSession]:
        async with self._write_lock, self._guard("list_active_sessions"):
            rows = await self._fetchall(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE is_active = 1 ORDER BY started_at, id"
            )
        return [RecordingSession.model_validate(dict(row)) for row in rows]

    async def list_sessions(self, device_id: str, limit: int) -> list[RecordingSession]:
        """Sessions of a device, most recent first."""
        async with self._guard("list_sessions"):
            rows = await self._fetchall(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE device_id = ? "
                "ORDER BY started_at DESC, id DESC LIMIT ?",
                (device_id, limit),
            )
        return [RecordingSession.model_validate(dict(row)) for row in rows]

    async def list_coordinates(self, session_id: int, limit: int) -> list[Coordinate]:
        """Points of a session in capture order."""
        async with self._guard("list_coordinates"):
            rows = await self._fetchall(
                f"SELECT {_COORDINATE_COLUMNS} FROM coordinates WHERE session_id = ? "
                "ORDER BY created_at, id LIMIT ?",
                (session_id, limit),
            )
        return [Coordinate.model_validate(dict(row)) for row in rows]

    async def latest_coordinate(self, device_id: str) -> Coordinate | None:
        async with self._guard("latest_coordinate"):
            row = await self._fetchone(
                f"SELECT {_COORDINATE_COLUMNS} FROM coordinates WHERE device_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (device_id,),
            )
        return Coordinate.model_validate(dict(row)) if row is not None else None

    async def ping(self) -> str:
        """Round-trip to the database; returns its current UTC time."""
        async with self._guard("ping"):
            row = await self._fetchone("SELECT strftime('%Y-%m-%dT%H:%M:%fZ', 'now') AS now")
        return str(row["now"]) if row is not None else ""
