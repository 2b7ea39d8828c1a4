"""In-process document store.

Used for local development and the test suite. Honors the same contract as
the MongoDB back-end, including the unique indexes, so services behave the
same on either. Every method runs without awaiting, which makes each call
atomic with respect to the event loop.
"""
import secrets
from typing import Dict, Iterable, List, Tuple, TypeVar

from pydantic import BaseModel

from app.chat.schemas import Chat, ChatFilter
from app.chatrooms.schemas import Chatroom, ChatroomFilter, ChatroomParticipant
from app.clients.schemas import Client
from app.common.errors import ConflictError, NotFoundError
from app.common.schemas import Pagination
from app.store.base import (
    ChatRepository,
    ChatroomRepository,
    ClientRepository,
    DocumentStore,
    UserRepository,
    chat_matches,
    chatroom_matches,
)
from app.users.schemas import User

M = TypeVar("M", bound=BaseModel)


def _new_id() -> str:
    # Same width as a Mongo ObjectId so ids look alike across back-ends.
    return secrets.token_hex(12)


class _Table:
    """Ordered id -> model map. Insertion order doubles as creation order."""

    def __init__(self, entity: str) -> None:
        self.entity = entity
        self.rows: Dict[str, BaseModel] = {}

    def get(self, row_id: str):
        row = self.rows.get(row_id)
        if row is None:
            raise NotFoundError(self.entity)
        return row.model_copy(deep=True)

    def insert(self, model: M) -> M:
        model = model.model_copy(deep=True)
        if not model.id:
            model.id = _new_id()
        elif model.id in self.rows:
            raise ConflictError(f"{self.entity} already exists")
        self.rows[model.id] = model
        return model.model_copy(deep=True)

    def replace(self, model: M) -> M:
        if model.id not in self.rows:
            raise NotFoundError(self.entity)
        self.rows[model.id] = model.model_copy(deep=True)
        return model.model_copy(deep=True)

    def remove(self, row_id: str) -> None:
        if self.rows.pop(row_id, None) is None:
            raise NotFoundError(self.entity)

    def newest_first(self) -> List:
        return [row.model_copy(deep=True) for row in reversed(list(self.rows.values()))]

    def check_unique(self, field: str, value, exclude_id=None) -> None:
        for row in self.rows.values():
            if value and row.id != exclude_id and getattr(row, field) == value:
                raise ConflictError(f"{self.entity} with this {field} already exists")


def _page(items: List[M], pag: Pagination) -> Tuple[List[M], int]:
    return pag.window(items), len(items)


class MemoryUserRepository(UserRepository):

    def __init__(self) -> None:
        self._table = _Table("User")

    async def get(self, user_id: str) -> User:
        return self._table.get(user_id)

    async def get_by_external_id(self, external_id: str) -> User:
        for user in self._table.rows.values():
            if user.userId == external_id:
                return user.model_copy(deep=True)
        raise NotFoundError("User")

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        return {
            uid: self._table.rows[uid].model_copy(deep=True)
            for uid in set(user_ids)
            if uid in self._table.rows
        }

    async def get_all(self, pag: Pagination) -> Tuple[List[User], int]:
        return _page(self._table.newest_first(), pag)

    async def create(self, user: User) -> User:
        self._table.check_unique("userId", user.userId)
        self._table.check_unique("username", user.username)
        return self._table.insert(user)

    async def update(self, user: User) -> User:
        self._table.check_unique("userId", user.userId, exclude_id=user.id)
        self._table.check_unique("username", user.username, exclude_id=user.id)
        return self._table.replace(user)

    async def delete(self, user_id: str) -> None:
        self._table.remove(user_id)


class MemoryClientRepository(ClientRepository):

    def __init__(self) -> None:
        self._table = _Table("Client")

    async def get(self, client_id: str) -> Client:
        return self._table.get(client_id)

    async def get_by_key(self, client_key: str) -> Client:
        for client in self._table.rows.values():
            if client.clientKey == client_key:
                return client.model_copy(deep=True)
        raise NotFoundError("Client")

    async def get_all(self, pag: Pagination) -> Tuple[List[Client], int]:
        return _page(self._table.newest_first(), pag)

    async def create(self, client: Client) -> Client:
        self._table.check_unique("clientKey", client.clientKey)
        return self._table.insert(client)

    async def update(self, client: Client) -> Client:
        self._table.check_unique("clientKey", client.clientKey, exclude_id=client.id)
        return self._table.replace(client)

    async def delete(self, client_id: str) -> None:
        self._table.remove(client_id)


class MemoryChatRepository(ChatRepository):

    def __init__(self, users: UserRepository) -> None:
        super().__init__(users)
        self._table = _Table("Chat")

    async def get(self, chat_id: str) -> Chat:
        return self._table.get(chat_id)

    async def get_all(self, filter: ChatFilter, pag: Pagination) -> Tuple[List[Chat], int]:
        chats = [c for c in self._table.newest_first() if chat_matches(c, filter)]
        # stable sort keeps insertion order as the tiebreaker
        chats.sort(key=lambda c: c.createdTimestamp, reverse=True)
        return _page(chats, pag)

    async def create(self, chat: Chat) -> Chat:
        return self._table.insert(chat)

    async def update(self, chat: Chat) -> Chat:
        current = self._table.get(chat.id)
        current.message = chat.message
        current.premium = chat.premium
        return self._table.replace(current)

    async def delete(self, chat_id: str) -> None:
        self._table.remove(chat_id)

    async def delete_by_chatroom(self, chatroom_id: str) -> int:
        doomed = [cid for cid, c in self._table.rows.items() if c.chatroom == chatroom_id]
        for cid in doomed:
            del self._table.rows[cid]
        return len(doomed)


class MemoryChatroomRepository(ChatroomRepository):

    def __init__(self, users: UserRepository) -> None:
        super().__init__(users)
        self._table = _Table("Chatroom")

    def _row(self, chatroom_id: str) -> Chatroom:
        row = self._table.rows.get(chatroom_id)
        if row is None:
            raise NotFoundError("Chatroom")
        return row

    async def get(self, chatroom_id: str) -> Chatroom:
        return self._table.get(chatroom_id)

    async def get_all(
        self, filter: ChatroomFilter, pag: Pagination
    ) -> Tuple[List[Chatroom], int]:
        rooms = [r for r in self._table.newest_first() if chatroom_matches(r, filter)]
        rooms.sort(key=lambda r: r.createdTimestamp, reverse=True)
        return _page(rooms, pag)

    async def create(self, chatroom: Chatroom) -> Chatroom:
        return self._table.insert(chatroom)

    async def update(self, chatroom: Chatroom) -> Chatroom:
        row = self._row(chatroom.id)
        row.name = chatroom.name
        row.type = chatroom.type
        return row.model_copy(deep=True)

    async def delete(self, chatroom_id: str) -> None:
        self._table.remove(chatroom_id)

    async def add_participant(self, chatroom_id: str, participant: ChatroomParticipant) -> None:
        row = self._row(chatroom_id)
        if row.find_participant(participant.user) is not None:
            raise ConflictError("User is already a participant")
        row.participants.append(participant.model_copy())

    async def remove_participant(self, chatroom_id: str, user_id: str) -> None:
        row = self._row(chatroom_id)
        row.participants = [p for p in row.participants if p.user != user_id]

    async def update_participant(self, chatroom_id: str, participant: ChatroomParticipant) -> None:
        row = self._row(chatroom_id)
        for i, current in enumerate(row.participants):
            if current.user == participant.user:
                row.participants[i] = participant.model_copy()
                return
        raise NotFoundError("Participant")

    async def record_message(self, chatroom_id: str, chat: Chat) -> None:
        row = self._row(chatroom_id)
        row.messagesCount += 1
        if row.lastMessageTimestamp is None or chat.createdTimestamp >= row.lastMessageTimestamp:
            row.lastMessage = chat.message
            row.lastSender = chat.sender
            row.lastMessageTimestamp = chat.createdTimestamp

    async def adjust_messages_count(self, chatroom_id: str, delta: int) -> None:
        row = self._row(chatroom_id)
        row.messagesCount = max(0, row.messagesCount + delta)


class MemoryDocumentStore(DocumentStore):

    def __init__(self) -> None:
        self.users = MemoryUserRepository()
        self.clients = MemoryClientRepository()
        self.chats = MemoryChatRepository(self.users)
        self.chatrooms = MemoryChatroomRepository(self.users)
