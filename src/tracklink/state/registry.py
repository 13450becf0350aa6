"""Device -> active recording session registry.

This is the only component allowed to change which session is active for a
device. The in-memory mapping is a cache of the durable store and can be
rebuilt from it at any time with :meth:`SessionRegistry.reconcile`.
"""

from __future__ import annotations

import asyncio
import logging

from tracklink._store import DurableStore
from tracklink.exceptions import SessionNotFoundError
from tracklink.models.session import RecordingSession
from tracklink.state.locks import KeyedLock

_logger = logging.getLogger(__name__)


class SessionRegistry:
    """Authoritative-but-cached mapping of device id to active session id.

    ``start`` and ``stop`` for the same device are linearized through a
    per-device lock; different devices never wait on each other.
    """

    def __init__(self, store: DurableStore) -> None:
        self._store = store
        self._active: dict[str, int] = {}
        self._locks = KeyedLock()
        self._reconcile_lock = asyncio.Lock()
        # Devices mutated while a reconcile query is in flight.
        self._touched: set[str] | None = None

    def _set_active(self, device_id: str, session_id: int | None) -> None:
        if session_id is None:
            self._active.pop(device_id, None)
        else:
            self._active[device_id] = session_id
        if self._touched is not None:
            self._touched.add(device_id)

    def active_session_id(self, device_id: str) -> int | None:
        """Non-blocking cache peek."""
        return self._active.get(device_id)

    def snapshot(self) -> dict[str, int]:
        """Copy of the whole device -> session mapping."""
        return dict(self._active)

    async def resolve_active(self, device_id: str) -> int | None:
        """Active session id for *device_id* from the cache.

        There is no durable fallback here: this is the telemetry hot path.
        If a start/stop for the device is in flight, wait for it so a
        half-applied transition is never observed.
        """
        if self._locks.locked(device_id):
            async with self._locks.hold(device_id):
                return self._active.get(device_id)
        return self._active.get(device_id)

    async def start(self, device_id: str, title: str | None = None) -> RecordingSession:
        """Open a new active session, ending the current one first.

        The deactivate-then-create sequence runs as one store transaction.
        Store failures propagate to the caller.
        """
        async with self._locks.hold(device_id):
            previous = self._active.get(device_id)
            session = await self._store.start_session(device_id, title)
            self._set_active(device_id, session.id)
        _logger.info(
            "Session started device=%s session_id=%s previous=%s title=%r",
            device_id,
            session.id,
            previous,
            title,
        )
        return session

    async def stop(self, device_id: str) -> RecordingSession:
        """End the device's active session.

        Raises
        ------
        SessionNotFoundError
            No active session exists; nothing durable is changed.
        """
        async with self._locks.hold(device_id):
            session: RecordingSession | None = None
            cached = self._active.get(device_id)
            if cached is not None:
                session = await self._store.end_session(cached)
                if session is None:
                    _logger.warning(
                        "Cached session no longer active device=%s session_id=%s",
                        device_id,
                        cached,
                    )

            if session is None:
                active = await self._store.find_active_session(device_id)
                if active is not None:
                    session = await self._store.end_session(active.id)

            self._set_active(device_id, None)
            if session is None:
                raise SessionNotFoundError(device_id)

        _logger.info("Session stopped device=%s session_id=%s", device_id, session.id)
        return session

    async def reconcile(self) -> int:
        """Rebuild the cache from every durable row with ``is_active=true``.

        Returns the number of active sessions loaded.
        """
        async with self._reconcile_lock:
            self._touched = set()
            try:
                rows = await self._store.list_active_sessions()
                fresh = {row.device_id: row.id for row in rows}
                # start/stop that landed during the query already wrote the
                # newest value; keep it.
                for device_id in self._touched:
                    current = self._active.get(device_id)
                    if current is None:
                        fresh.pop(device_id, None)
                    else:
                        fresh[device_id] = current
                self._active = fresh
            finally:
                self._touched = None
        _logger.info("Loaded active sessions: %d", len(fresh))
        return len(fresh)
