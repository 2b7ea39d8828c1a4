"""Shared key-value store: presence, auth and client caches, pub/sub."""
from app.kv.base import KVStore

# Key layout shared with every other hub instance.
CONNECTED_USERS_KEY = "ws:connected_users"
USER_SOCKET_PREFIX = "ws:user_socket:"
SOCKET_USER_PREFIX = "ws:socket_user:"
USER_SOCKETS_PREFIX = "ws:user_sockets:"
AUTH_TOKEN_PREFIX = "auth:token:"
CLIENT_KEY_PREFIX = "client:key:"


def create_kv(settings) -> KVStore:
    """Build the KV store selected by ``kv.backend``."""
    backend = settings.kv.backend
    if backend == "memory":
        from app.kv.memory import MemoryKVStore
        return MemoryKVStore()
    if backend == "redis":
        from app.kv.redis_store import RedisKVStore
        return RedisKVStore(settings.secrets.redis.url, settings.kv.timeout_seconds)
    raise ValueError(f"Unknown kv backend: {backend}")
