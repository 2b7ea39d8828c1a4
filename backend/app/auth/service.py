"""Auth Bridge: exchange an end-user bearer token for a chat User.

Each client (tenant) owns an ``authEndpoint``. A token is validated by a
``GET`` to that endpoint with ``Authorization: Bearer <token>``; a 200
response body is the user record, which is mirrored into the user store.

Flow:
1. Check the ``auth:token:<token>`` cache; a hit returns immediately.
2. Look up the client; unknown client fails NotFound.
3. Call the auth endpoint (one attempt, no retries).
4. Map the upstream status, upsert the user, cache token -> user.
"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from app.common.errors import (
    ChatError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
)
from app.kv import AUTH_TOKEN_PREFIX
from app.kv.base import KVStore
from app.store.base import ClientRepository, UserRepository
from app.users.schemas import User

logger = logging.getLogger(__name__)


class AuthBridge:
    """Validates bearer tokens against each client's auth endpoint."""

    def __init__(
        self,
        clients: ClientRepository,
        users: UserRepository,
        kv: KVStore,
        http_client: httpx.AsyncClient,
        token_ttl: int = 15 * 60,
        request_timeout: float = 10.0,
        error_body_limit: int = 512,
    ) -> None:
        self.clients = clients
        self.users = users
        self.kv = kv
        self.http = http_client
        self.token_ttl = token_ttl
        self.request_timeout = request_timeout
        self.error_body_limit = error_body_limit

    async def authenticate(self, client_id: str, token: Optional[str]) -> User:
        """Resolve *token* issued by client *client_id* to a User.

        Args:
            client_id: Id of the client whose auth endpoint vouches for the token.
            token: Opaque bearer token.

        Returns:
            The upserted User.

        Raises:
            UnauthorizedError: Empty token, or upstream answered 401.
            ForbiddenError: Upstream answered 403.
            NotFoundError: Unknown client, or upstream answered 404.
            InternalError: Any other upstream status, transport failure, an
                undecodable user body, or a profile that clashes with a
                stored user.
        """
        if not token:
            raise UnauthorizedError("Invalid token")

        cache_key = AUTH_TOKEN_PREFIX + token
        cached = await self._cached(cache_key)
        if cached is not None:
            return cached

        client = await self.clients.get(client_id)
        user = await self._fetch_user(client.authEndpoint, token)
        user = await self._upsert(user)
        await self._cache(cache_key, user)
        return user

    async def _cached(self, cache_key: str) -> Optional[User]:
        try:
            raw = await self.kv.get(cache_key)
        except ChatError as e:
            logger.warning(f"[AuthBridge] Token cache read failed: {e.message}")
            return None
        if raw is None:
            return None
        try:
            return User.model_validate_json(raw)
        except ValidationError:
            logger.warning("[AuthBridge] Corrupt token cache entry treated as miss")
            return None

    async def _cache(self, cache_key: str, user: User) -> None:
        try:
            await self.kv.set(cache_key, user.model_dump_json(), ttl=self.token_ttl)
        except ChatError as e:
            logger.warning(f"[AuthBridge] Token cache write failed: {e.message}")

    async def _fetch_user(self, endpoint: str, token: str) -> User:
        try:
            resp = await self.http.get(
                endpoint,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.request_timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"[AuthBridge] Auth endpoint unreachable ({endpoint}): {e}")
            raise InternalError("Authentication request failed") from e

        if resp.status_code == 401:
            raise UnauthorizedError("Invalid token")
        if resp.status_code == 403:
            raise ForbiddenError()
        if resp.status_code == 404:
            raise NotFoundError("User")
        if resp.status_code != 200:
            body = resp.text[: self.error_body_limit]
            logger.error(f"[AuthBridge] Auth endpoint returned {resp.status_code}")
            raise InternalError(f"Authentication service error: {body}")

        try:
            return User.model_validate_json(resp.content)
        except ValidationError as e:
            raise InternalError("Failed to decode authentication response") from e

    async def _upsert(self, user: User) -> User:
        """Create the user on first sight, otherwise refresh the stored copy."""
        existing: Optional[User] = None
        if user.id:
            try:
                existing = await self.users.get(user.id)
            except NotFoundError:
                existing = None
        if existing is None and user.userId:
            try:
                existing = await self.users.get_by_external_id(user.userId)
            except NotFoundError:
                existing = None

        try:
            if existing is None:
                created = await self.users.create(user)
                logger.info(f"[AuthBridge] Created user {created.id} (userId={created.userId})")
                return created
            return await self.users.update(user.model_copy(update={"id": existing.id}))
        except ConflictError as e:
            # upstream profile clashes with another stored user
            logger.error(f"[AuthBridge] User upsert conflict for userId={user.userId}: {e.message}")
            raise InternalError("Failed to store authenticated user") from e
