"""Chat service: sending, reading and editing messages.

A message write persists the Chat first; that insert is authoritative. The
chatroom summary (``lastMessage``, ``lastSender``, ``lastMessageTimestamp``,
``messagesCount``) is updated right after and a failure there is logged, not
raised. The next successful write brings the summary forward again.
"""
import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from app.chat.schemas import Chat, ChatFilter, ChatPopulated
from app.chatrooms.schemas import ChatroomPopulated, ChatroomType
from app.chatrooms.service import ChatroomService
from app.common.errors import ChatError, MutedError, NotFoundError, NotParticipantError
from app.common.schemas import Pagination
from app.store.base import ChatRepository, ChatroomRepository

logger = logging.getLogger(__name__)


class ChatService:

    def __init__(
        self,
        chats: ChatRepository,
        rooms: ChatroomRepository,
        chatrooms: ChatroomService,
    ) -> None:
        self.chats = chats
        self.rooms = rooms
        self.chatrooms = chatrooms
        # (user_a, user_b) -> [lock, holders]; serializes direct-room lookup+create
        self._pair_locks: Dict[Tuple[str, str], list] = {}

    async def send_message(
        self,
        chatroom_id: str,
        sender_id: str,
        text: str,
        premium: Optional[bool] = None,
    ) -> Chat:
        """Persist a message from *sender_id* into *chatroom_id*.

        Raises:
            NotFoundError: The room does not exist.
            NotParticipantError: The sender is not in the room.
            MutedError: The sender is muted in the room.
        """
        room = await self.rooms.get(chatroom_id)
        participant = room.find_participant(sender_id)
        if participant is None:
            raise NotParticipantError()
        if participant.is_muted(time.time()):
            raise MutedError()

        receiver = None
        if not room.isGroup:
            receiver = next((uid for uid in room.participant_ids() if uid != sender_id), None)

        chat = await self.chats.create(Chat(
            message=text,
            sender=sender_id,
            receiver=receiver,
            chatroom=chatroom_id,
            createdTimestamp=int(time.time()),
            premium=premium,
        ))

        try:
            await self.rooms.record_message(chatroom_id, chat)
        except ChatError as e:
            logger.warning(f"[Chat] Summary update for room {chatroom_id} failed: {e.message}")
        return chat

    async def send_direct_message(
        self, sender_id: str, receiver_id: str, text: str
    ) -> Tuple[Chat, ChatroomPopulated, bool]:
        """Send to the one-to-one room between two users, creating it on
        first contact. Concurrent first messages share one room; the flag is
        True only for the call that created it."""
        key = tuple(sorted((sender_id, receiver_id)))
        entry = self._pair_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                room = await self.chatrooms.find_direct(sender_id, receiver_id)
                is_new = room is None
                if is_new:
                    created = await self.chatrooms.create(
                        name="",
                        type=ChatroomType.PRIVATE,
                        is_group=False,
                        creator_id=sender_id,
                        participant_ids=[receiver_id],
                    )
                    room_id = created.id
                else:
                    room_id = room.id
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._pair_locks.pop(key, None)

        chat = await self.send_message(room_id, sender_id, text)
        return chat, await self.rooms.get_populated(room_id), is_new

    async def get(self, chat_id: str) -> Optional[ChatPopulated]:
        try:
            return await self.chats.get_populated(chat_id)
        except NotFoundError:
            return None

    async def list(
        self, filter: ChatFilter, pag: Pagination
    ) -> Tuple[List[ChatPopulated], int]:
        return await self.chats.get_all_populated(filter, pag)

    async def update(self, chat_id: str, text: str) -> Chat:
        chat = await self.chats.get(chat_id)
        chat.message = text
        return await self.chats.update(chat)

    async def remove(self, chat_id: str) -> Chat:
        chat = await self.chats.get(chat_id)
        await self.chats.delete(chat_id)
        try:
            await self.rooms.adjust_messages_count(chat.chatroom, -1)
        except ChatError as e:
            logger.warning(f"[Chat] Count update for room {chat.chatroom} failed: {e.message}")
        return chat
