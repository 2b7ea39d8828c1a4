"""Abstract shared key-value store.

Holds the ephemeral state shared between hub instances: presence, the auth
token cache and the client-key cache. Values are plain strings (callers
serialize JSON themselves). A missing key reads as ``None``, never as an
error.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Set, Tuple


class KVStore(ABC):

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        """Store *value*; ``ttl`` in seconds, ``None`` for no expiry."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> None:
        ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> None:
        ...

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        ...

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool:
        ...

    @abstractmethod
    async def publish(self, channel: str, payload: str) -> None:
        ...

    @abstractmethod
    def subscribe(self, *channels: str) -> AsyncIterator[Tuple[str, str]]:
        """Yield ``(channel, payload)`` for every message published on
        *channels* until the consumer stops iterating."""

    @abstractmethod
    async def scan_keys(self, pattern: str) -> List[str]:
        """Return keys matching a glob *pattern* (``*``, ``?``)."""

    async def connect(self) -> None:
        """Verify connectivity. Default: nothing to do."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""
