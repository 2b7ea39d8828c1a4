"""Abstract document store interface.

Every storage back-end (MongoDB, in-process memory, ...) implements these
repositories so the services stay storage-agnostic.

Contract shared by all implementations:
    - ``get`` raises ``NotFoundError`` on a miss; services translate that
      to ``None`` where a miss is not an error.
    - Unique-index violations raise ``ConflictError``.
    - Network failures and deadline overruns raise ``TransientError``.
    - ``get_all`` returns ``(items, total)`` sorted newest first.

Populated reads resolve user references with one extra batched lookup
(``UserRepository.get_many``) instead of one lookup per participant.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Tuple

from app.chat.schemas import Chat, ChatFilter, ChatPopulated
from app.chatrooms.schemas import (
    Chatroom,
    ChatroomFilter,
    ChatroomParticipant,
    ChatroomParticipantPopulated,
    ChatroomPopulated,
)
from app.clients.schemas import Client
from app.common.schemas import Pagination
from app.users.schemas import User


def _placeholder(user_id: str) -> User:
    # Participant whose user record is gone: keep the id so clients can render it.
    return User(id=user_id)


class UserRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> User:
        """Return the user with *user_id* or raise ``NotFoundError``."""

    @abstractmethod
    async def get_by_external_id(self, external_id: str) -> User:
        """Return the user whose ``userId`` equals *external_id*."""

    @abstractmethod
    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        """Batch lookup; ids with no record are simply absent from the result."""

    @abstractmethod
    async def get_all(self, pag: Pagination) -> Tuple[List[User], int]:
        ...

    @abstractmethod
    async def create(self, user: User) -> User:
        """Insert *user*, assigning an id when it has none."""

    @abstractmethod
    async def update(self, user: User) -> User:
        ...

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        ...


class ClientRepository(ABC):

    @abstractmethod
    async def get(self, client_id: str) -> Client:
        ...

    @abstractmethod
    async def get_by_key(self, client_key: str) -> Client:
        ...

    @abstractmethod
    async def get_all(self, pag: Pagination) -> Tuple[List[Client], int]:
        ...

    @abstractmethod
    async def create(self, client: Client) -> Client:
        ...

    @abstractmethod
    async def update(self, client: Client) -> Client:
        ...

    @abstractmethod
    async def delete(self, client_id: str) -> None:
        ...


class ChatRepository(ABC):

    def __init__(self, users: UserRepository) -> None:
        self._users = users

    @abstractmethod
    async def get(self, chat_id: str) -> Chat:
        ...

    @abstractmethod
    async def get_all(self, filter: ChatFilter, pag: Pagination) -> Tuple[List[Chat], int]:
        ...

    @abstractmethod
    async def create(self, chat: Chat) -> Chat:
        ...

    @abstractmethod
    async def update(self, chat: Chat) -> Chat:
        """Persist a new message text. ``createdTimestamp`` is never rewritten."""

    @abstractmethod
    async def delete(self, chat_id: str) -> None:
        ...

    @abstractmethod
    async def delete_by_chatroom(self, chatroom_id: str) -> int:
        """Remove every message of a room, returning how many were removed."""

    async def get_populated(self, chat_id: str) -> ChatPopulated:
        chat = await self.get(chat_id)
        return (await self._populate([chat]))[0]

    async def get_all_populated(
        self, filter: ChatFilter, pag: Pagination
    ) -> Tuple[List[ChatPopulated], int]:
        chats, total = await self.get_all(filter, pag)
        return await self._populate(chats), total

    async def _populate(self, chats: List[Chat]) -> List[ChatPopulated]:
        ids = {c.sender for c in chats} | {c.receiver for c in chats if c.receiver}
        users = await self._users.get_many(ids)
        populated = []
        for chat in chats:
            data = chat.model_dump()
            data["sender"] = users.get(chat.sender) or _placeholder(chat.sender)
            if chat.receiver:
                data["receiver"] = users.get(chat.receiver) or _placeholder(chat.receiver)
            populated.append(ChatPopulated(**data))
        return populated


class ChatroomRepository(ABC):

    def __init__(self, users: UserRepository) -> None:
        self._users = users

    @abstractmethod
    async def get(self, chatroom_id: str) -> Chatroom:
        ...

    @abstractmethod
    async def get_all(
        self, filter: ChatroomFilter, pag: Pagination
    ) -> Tuple[List[Chatroom], int]:
        ...

    @abstractmethod
    async def create(self, chatroom: Chatroom) -> Chatroom:
        ...

    @abstractmethod
    async def update(self, chatroom: Chatroom) -> Chatroom:
        """Persist ``name`` and ``type``. Participants and summary fields
        are only changed through the dedicated operations below."""

    @abstractmethod
    async def delete(self, chatroom_id: str) -> None:
        ...

    @abstractmethod
    async def add_participant(self, chatroom_id: str, participant: ChatroomParticipant) -> None:
        """Append *participant*; ``ConflictError`` if the user is already in the room."""

    @abstractmethod
    async def remove_participant(self, chatroom_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def update_participant(self, chatroom_id: str, participant: ChatroomParticipant) -> None:
        ...

    @abstractmethod
    async def record_message(self, chatroom_id: str, chat: Chat) -> None:
        """Bump ``messagesCount`` and advance the last-message summary.

        The summary only moves forward: a message older than the current
        ``lastMessageTimestamp`` still counts but does not replace it.
        """

    @abstractmethod
    async def adjust_messages_count(self, chatroom_id: str, delta: int) -> None:
        """Add *delta* to ``messagesCount`` without going below zero."""

    async def get_populated(self, chatroom_id: str) -> ChatroomPopulated:
        room = await self.get(chatroom_id)
        return (await self._populate([room]))[0]

    async def get_all_populated(
        self, filter: ChatroomFilter, pag: Pagination
    ) -> Tuple[List[ChatroomPopulated], int]:
        rooms, total = await self.get_all(filter, pag)
        return await self._populate(rooms), total

    async def _populate(self, rooms: List[Chatroom]) -> List[ChatroomPopulated]:
        ids = set()
        for room in rooms:
            ids.update(room.participant_ids())
            if room.lastSender:
                ids.add(room.lastSender)
        users = await self._users.get_many(ids)

        populated = []
        for room in rooms:
            data = room.model_dump(exclude={"participants", "lastSender"})
            data["lastSender"] = (
                users.get(room.lastSender) or _placeholder(room.lastSender)
                if room.lastSender else None
            )
            data["participants"] = [
                ChatroomParticipantPopulated(
                    user=users.get(p.user) or _placeholder(p.user),
                    role=p.role,
                    joinedTimestamp=p.joinedTimestamp,
                    mutedUntilTimestamp=p.mutedUntilTimestamp,
                )
                for p in room.participants
            ]
            populated.append(ChatroomPopulated(**data))
        return populated


class DocumentStore(ABC):
    """Bundle of repositories over one storage back-end."""

    users: UserRepository
    clients: ClientRepository
    chats: ChatRepository
    chatrooms: ChatroomRepository

    async def connect(self) -> None:
        """Open connections and create indexes. Default: nothing to do."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""


def chat_matches(chat: Chat, filter: ChatFilter) -> bool:
    if filter.chatroomId and chat.chatroom != filter.chatroomId:
        return False
    if filter.senderId and chat.sender != filter.senderId:
        return False
    if filter.receiverId and chat.receiver != filter.receiverId:
        return False
    if filter.startTime is not None and chat.createdTimestamp < filter.startTime:
        return False
    if filter.endTime is not None and chat.createdTimestamp > filter.endTime:
        return False
    return True


def chatroom_matches(room: Chatroom, filter: ChatroomFilter) -> bool:
    if filter.participantId and room.find_participant(filter.participantId) is None:
        return False
    if filter.type is not None and room.type != filter.type:
        return False
    if filter.isGroup is not None and room.isGroup != filter.isGroup:
        return False
    if filter.startTime is not None and room.createdTimestamp < filter.startTime:
        return False
    if filter.endTime is not None and room.createdTimestamp > filter.endTime:
        return False
    return True
