"""Client registry: client-key validation with a KV read-through cache,
plus the administrative CRUD behind it."""
import logging
import time
from typing import List, Optional, Tuple

from pydantic import ValidationError

from app.clients.schemas import Client, ClientStatus, CreateClientRequest, UpdateClientRequest
from app.common.errors import ChatError, NotFoundError, UnauthorizedError
from app.common.schemas import Pagination
from app.kv import CLIENT_KEY_PREFIX
from app.kv.base import KVStore
from app.store.base import ClientRepository

logger = logging.getLogger(__name__)


class ClientService:
    """Resolves client keys to active clients.

    Cache layout: ``client:key:<clientKey>`` holds the serialized Client for
    ``cache_ttl`` seconds. Cache failures never fail a lookup.
    """

    def __init__(self, repo: ClientRepository, kv: KVStore, cache_ttl: int = 3600) -> None:
        self.repo = repo
        self.kv = kv
        self.cache_ttl = cache_ttl

    async def _cached(self, client_key: str) -> Optional[Client]:
        try:
            raw = await self.kv.get(CLIENT_KEY_PREFIX + client_key)
        except ChatError as e:
            logger.warning(f"[ClientRegistry] Cache read failed: {e.message}")
            return None
        if raw is None:
            return None
        try:
            return Client.model_validate_json(raw)
        except ValidationError:
            logger.warning("[ClientRegistry] Dropping corrupt cache entry")
            return None

    async def _cache(self, client: Client) -> None:
        try:
            await self.kv.set(
                CLIENT_KEY_PREFIX + client.clientKey,
                client.model_dump_json(),
                ttl=self.cache_ttl,
            )
        except ChatError as e:
            logger.warning(f"[ClientRegistry] Cache write failed: {e.message}")

    async def _evict(self, *client_keys: str) -> None:
        try:
            await self.kv.delete(*(CLIENT_KEY_PREFIX + k for k in client_keys if k))
        except ChatError as e:
            logger.warning(f"[ClientRegistry] Cache eviction failed: {e.message}")

    async def validate_key(self, client_key: Optional[str]) -> Client:
        """Return the active client owning *client_key*.

        Raises:
            UnauthorizedError: Key is empty, unknown, or belongs to an
                inactive client.
        """
        if not client_key:
            raise UnauthorizedError("Invalid client key")

        client = await self._cached(client_key)
        if client is None:
            try:
                client = await self.repo.get_by_key(client_key)
            except NotFoundError:
                raise UnauthorizedError("Invalid client key")
            await self._cache(client)

        if client.status != ClientStatus.ACTIVE:
            raise UnauthorizedError("Invalid client key")
        return client

    # =========================================================================
    # Admin CRUD
    # =========================================================================

    async def get(self, client_id: str) -> Optional[Client]:
        try:
            return await self.repo.get(client_id)
        except NotFoundError:
            return None

    async def list(self, pag: Pagination) -> Tuple[List[Client], int]:
        return await self.repo.get_all(pag)

    async def create(self, req: CreateClientRequest) -> Client:
        now = int(time.time())
        client = Client(
            name=req.name,
            description=req.description,
            clientKey=req.clientKey,
            authEndpoint=req.authEndpoint,
            status=ClientStatus.ACTIVE,
            createdTimestamp=now,
            updatedTimestamp=now,
        )
        client = await self.repo.create(client)
        logger.info(f"[ClientRegistry] Created client {client.id} ({client.name})")
        return client

    async def update(self, client_id: str, req: UpdateClientRequest) -> Client:
        current = await self.repo.get(client_id)
        updated = current.model_copy(update={
            "name": req.name,
            "description": req.description,
            "clientKey": req.clientKey,
            "authEndpoint": req.authEndpoint,
            "status": req.status,
            "updatedTimestamp": int(time.time()),
        })
        updated = await self.repo.update(updated)
        await self._evict(current.clientKey, updated.clientKey)
        return updated

    async def delete(self, client_id: str) -> None:
        current = await self.repo.get(client_id)
        await self.repo.delete(client_id)
        await self._evict(current.clientKey)
        logger.info(f"[ClientRegistry] Deleted client {client_id}")
