"""User service."""
import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError

from app.common.errors import ChatError, NotFoundError
from app.common.schemas import Pagination
from app.kv import AUTH_TOKEN_PREFIX
from app.kv.base import KVStore
from app.store.base import UserRepository
from app.users.schemas import CreateUserRequest, UpdateUserRequest, User

logger = logging.getLogger(__name__)


class UserService:

    def __init__(self, repo: UserRepository, kv: KVStore, token_ttl: int = 15 * 60) -> None:
        self.repo = repo
        self.kv = kv
        self.token_ttl = token_ttl

    async def get(self, user_id: str) -> Optional[User]:
        try:
            return await self.repo.get(user_id)
        except NotFoundError:
            return None

    async def list(self, pag: Pagination) -> Tuple[List[User], int]:
        return await self.repo.get_all(pag)

    async def create(self, req: CreateUserRequest) -> User:
        return await self.repo.create(User(**req.model_dump()))

    async def update(self, user_id: str, req: UpdateUserRequest) -> User:
        current = await self.repo.get(user_id)
        updated = current.model_copy(update=req.model_dump())
        updated = await self.repo.update(updated)
        # a purge would send the next request upstream, whose profile overwrites this edit
        await self._refresh_tokens(updated)
        return updated

    async def delete(self, user_id: str) -> None:
        await self.repo.delete(user_id)
        purged = await self._purge_tokens(user_id)
        logger.info(f"[Users] Deleted user {user_id} ({purged} cached tokens purged)")

    async def _token_keys(self, user_id: str) -> Tuple[List[str], List[str]]:
        """Return (keys bound to *user_id*, undecodable keys) under ``auth:token:*``."""
        bound: List[str] = []
        corrupt: List[str] = []
        for key in await self.kv.scan_keys(AUTH_TOKEN_PREFIX + "*"):
            raw = await self.kv.get(key)
            if raw is None:
                continue
            try:
                cached = User.model_validate_json(raw)
            except ValidationError:
                corrupt.append(key)
                continue
            if cached.id == user_id:
                bound.append(key)
        return bound, corrupt

    async def _refresh_tokens(self, user: User) -> int:
        try:
            bound, corrupt = await self._token_keys(user.id)
            payload = user.model_dump_json()
            for key in bound:
                await self.kv.set(key, payload, ttl=self.token_ttl)
            if corrupt:
                await self.kv.delete(*corrupt)
            return len(bound)
        except ChatError as e:
            logger.warning(f"[Users] Token cache refresh failed for {user.id}: {e.message}")
            return 0

    async def _purge_tokens(self, user_id: str) -> int:
        """Drop every ``auth:token:*`` entry bound to *user_id*."""
        try:
            bound, corrupt = await self._token_keys(user_id)
            doomed = bound + corrupt
            if doomed:
                await self.kv.delete(*doomed)
            return len(doomed)
        except ChatError as e:
            logger.warning(f"[Users] Token cache purge failed for {user_id}: {e.message}")
            return 0
