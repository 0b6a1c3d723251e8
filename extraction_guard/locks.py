"""Per-(document_type, model) asyncio locks serializing evolution and promotion."""

from __future__ import annotations

import asyncio


class PairLocks:
    """Lazily created lock per pair; different pairs never contend."""

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def for_pair(self, document_type: str, model: str) -> asyncio.Lock:
        key = (document_type, model)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, document_type: str, model: str) -> bool:
        lock = self._locks.get((document_type, model))
        return lock is not None and lock.locked()
