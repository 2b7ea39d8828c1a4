"""In-process KV store with TTLs and pub/sub, for development and tests."""
import asyncio
import fnmatch
import time
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from app.kv.base import KVStore


class MemoryKVStore(KVStore):

    def __init__(self) -> None:
        # key -> (value, expires_at monotonic or None)
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._values[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._values[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._values.pop(key, None)
            if self._sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key: str, *members: str) -> None:
        self._sets.setdefault(key, set()).update(members)

    async def srem(self, key: str, *members: str) -> None:
        members_set = self._sets.get(key)
        if members_set is None:
            return
        members_set.difference_update(members)
        if not members_set:
            del self._sets[key]

    async def smembers(self, key: str) -> Set[str]:
        return set(self._sets.get(key, ()))

    async def sismember(self, key: str, member: str) -> bool:
        return member in self._sets.get(key, ())

    async def publish(self, channel: str, payload: str) -> None:
        for queue in self._subscribers.get(channel, []):
            queue.put_nowait((channel, payload))

    async def subscribe(self, *channels: str) -> AsyncIterator[Tuple[str, str]]:
        queue: asyncio.Queue = asyncio.Queue()
        for channel in channels:
            self._subscribers.setdefault(channel, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            for channel in channels:
                self._subscribers[channel].remove(queue)

    async def scan_keys(self, pattern: str) -> List[str]:
        keys = [k for k in list(self._values) if self._live(k) is not None]
        keys.extend(self._sets)
        return [k for k in keys if fnmatch.fnmatchcase(k, pattern)]
