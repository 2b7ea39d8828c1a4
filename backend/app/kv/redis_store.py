"""Redis-backed KV store (redis.asyncio).

Every command is bounded by ``timeout_seconds``; connection errors and
overruns surface as ``TransientError``.
"""
import asyncio
import logging
from typing import AsyncIterator, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.common.errors import TransientError
from app.kv.base import KVStore

logger = logging.getLogger(__name__)


class RedisKVStore(KVStore):

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self._timeout = timeout_seconds
        self.redis = aioredis.from_url(url, decode_responses=True)

    async def _run(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError("KV store timed out") from exc
        except RedisError as exc:
            logger.warning(f"[Redis] Command failed: {exc}")
            raise TransientError("KV store unavailable") from exc

    async def connect(self) -> None:
        await self._run(self.redis.ping())
        logger.info("[Redis] Connected")

    async def close(self) -> None:
        await self.redis.aclose()

    async def get(self, key: str) -> Optional[str]:
        return await self._run(self.redis.get(key))

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        if ttl:
            await self._run(self.redis.set(key, value, px=int(ttl * 1000)))
        else:
            await self._run(self.redis.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run(self.redis.delete(*keys))

    async def sadd(self, key: str, *members: str) -> None:
        await self._run(self.redis.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> None:
        await self._run(self.redis.srem(key, *members))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._run(self.redis.smembers(key)))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._run(self.redis.sismember(key, member)))

    async def publish(self, channel: str, payload: str) -> None:
        await self._run(self.redis.publish(channel, payload))

    async def subscribe(self, *channels: str) -> AsyncIterator[Tuple[str, str]]:
        pubsub = self.redis.pubsub()
        await self._run(pubsub.subscribe(*channels))
        try:
            while True:
                try:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                except RedisError as exc:
                    raise TransientError("KV subscription lost") from exc
                if message is None:
                    continue
                yield message["channel"], message["data"]
        finally:
            try:
                await pubsub.unsubscribe(*channels)
            except RedisError as exc:
                logger.debug(f"[Redis] Unsubscribe failed: {exc}")
            await pubsub.aclose()

    async def scan_keys(self, pattern: str) -> List[str]:
        keys: List[str] = []
        try:
            async for key in self.redis.scan_iter(match=pattern, count=200):
                keys.append(key)
        except RedisError as exc:
            logger.warning(f"[Redis] Scan failed: {exc}")
            raise TransientError("KV store unavailable") from exc
        return keys
