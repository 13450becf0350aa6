"""Per-key asyncio mutual exclusion."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field


@dataclass(slots=True)
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    """One ``asyncio.Lock`` per key, created on demand.

    An entry lives only while some coroutine holds or waits for it, so memory
    is bounded by the number of keys with work in flight rather than by the
    number of keys ever seen.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def locked(self, key: str) -> bool:
        """Whether a holder currently owns *key*."""
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]
