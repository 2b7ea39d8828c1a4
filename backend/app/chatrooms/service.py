"""Chatroom service.

The primitives here enforce data invariants only (direct rooms keep exactly
two participants, group rooms keep an admin, participants are unique).
Who may call them is decided by ``app.chatrooms.permissions`` in the
transport layer.
"""
import logging
import time
from datetime import timedelta
from typing import List, Optional, Tuple

from app.chatrooms.schemas import (
    Chatroom,
    ChatroomFilter,
    ChatroomParticipant,
    ChatroomPopulated,
    ChatroomType,
    ParticipantRole,
)
from app.common.errors import BadRequestError, ForbiddenError, NotFoundError
from app.common.schemas import Pagination
from app.store.base import ChatRepository, ChatroomRepository, UserRepository

logger = logging.getLogger(__name__)

ADMIN_ROLES = (ParticipantRole.ADMIN, ParticipantRole.SUPER_ADMIN)


class ChatroomService:

    def __init__(
        self,
        rooms: ChatroomRepository,
        chats: ChatRepository,
        users: UserRepository,
    ) -> None:
        self.rooms = rooms
        self.chats = chats
        self.users = users

    async def _require_users(self, user_ids: List[str]) -> None:
        found = await self.users.get_many(user_ids)
        missing = [uid for uid in user_ids if uid not in found]
        if missing:
            raise NotFoundError("User", errors={uid: "unknown user" for uid in missing})

    async def create(
        self,
        name: str,
        type: ChatroomType,
        is_group: bool,
        creator_id: str,
        participant_ids: List[str],
    ) -> ChatroomPopulated:
        """Create a room with *creator_id* as admin and the rest as members.

        Duplicates (including the creator appearing in *participant_ids*)
        are collapsed. A direct room must end up with exactly two people.
        """
        others: List[str] = []
        for uid in participant_ids:
            if uid and uid != creator_id and uid not in others:
                others.append(uid)

        if not is_group and len(others) != 1:
            raise BadRequestError("A direct chatroom needs exactly one other participant")

        await self._require_users([creator_id] + others)

        now = int(time.time())
        participants = [
            ChatroomParticipant(user=creator_id, role=ParticipantRole.ADMIN, joinedTimestamp=now)
        ]
        participants.extend(
            ChatroomParticipant(user=uid, role=ParticipantRole.MEMBER, joinedTimestamp=now)
            for uid in others
        )
        room = await self.rooms.create(Chatroom(
            name=name,
            type=type,
            isGroup=is_group,
            createdTimestamp=now,
            participants=participants,
        ))
        logger.info(
            f"[Chatrooms] Created room {room.id} (group={is_group}, participants={len(participants)})"
        )
        return await self.rooms.get_populated(room.id)

    async def get(self, chatroom_id: str) -> Optional[ChatroomPopulated]:
        try:
            return await self.rooms.get_populated(chatroom_id)
        except NotFoundError:
            return None

    async def list(
        self, filter: ChatroomFilter, pag: Pagination
    ) -> Tuple[List[ChatroomPopulated], int]:
        return await self.rooms.get_all_populated(filter, pag)

    async def room_ids_for(self, user_id: str) -> List[str]:
        """Ids of every room *user_id* participates in."""
        rooms, _ = await self.rooms.get_all(
            ChatroomFilter(participantId=user_id), Pagination.unbounded()
        )
        return [room.id for room in rooms]

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Chatroom]:
        """Return the private one-to-one room between two users, if any."""
        rooms, _ = await self.rooms.get_all(
            ChatroomFilter(participantId=user_a, type=ChatroomType.PRIVATE, isGroup=False),
            Pagination.unbounded(),
        )
        wanted = {user_a, user_b}
        for room in rooms:
            ids = room.participant_ids()
            if len(ids) == 2 and set(ids) == wanted:
                return room
        return None

    async def update(
        self,
        chatroom_id: str,
        name: Optional[str] = None,
        type: Optional[ChatroomType] = None,
    ) -> ChatroomPopulated:
        room = await self.rooms.get(chatroom_id)
        if name is not None:
            room.name = name
        if type is not None:
            room.type = type
        await self.rooms.update(room)
        return await self.rooms.get_populated(chatroom_id)

    async def delete(self, chatroom_id: str) -> None:
        """Delete a room and every message in it."""
        await self.rooms.delete(chatroom_id)
        removed = await self.chats.delete_by_chatroom(chatroom_id)
        logger.info(f"[Chatrooms] Deleted room {chatroom_id} ({removed} messages)")

    # =========================================================================
    # Participants
    # =========================================================================

    async def add_participant(self, chatroom_id: str, user_id: str) -> ChatroomPopulated:
        room = await self.rooms.get(chatroom_id)
        if not room.isGroup:
            raise ForbiddenError("Cannot add participants to a direct chatroom")
        await self._require_users([user_id])
        await self.rooms.add_participant(chatroom_id, ChatroomParticipant(
            user=user_id,
            role=ParticipantRole.MEMBER,
            joinedTimestamp=int(time.time()),
        ))
        return await self.rooms.get_populated(chatroom_id)

    async def remove_participant(
        self, chatroom_id: str, user_id: str
    ) -> Optional[ChatroomPopulated]:
        """Remove *user_id* from the room.

        Group rooms only release members; admins must be demoted first.
        Leaving a direct room deletes it, so the result is ``None``.
        """
        room = await self.rooms.get(chatroom_id)
        participant = room.find_participant(user_id)
        if participant is None:
            raise NotFoundError("Participant")

        if not room.isGroup:
            await self.delete(chatroom_id)
            return None

        if participant.role != ParticipantRole.MEMBER:
            raise ForbiddenError("Cannot remove an admin from a group chatroom")
        await self.rooms.remove_participant(chatroom_id, user_id)
        return await self.rooms.get_populated(chatroom_id)

    async def update_participant_role(
        self, chatroom_id: str, user_id: str, role: ParticipantRole
    ) -> ChatroomPopulated:
        room = await self.rooms.get(chatroom_id)
        participant = room.find_participant(user_id)
        if participant is None:
            raise NotFoundError("Participant")

        if room.isGroup and participant.role in ADMIN_ROLES and role not in ADMIN_ROLES:
            admins = [p for p in room.participants if p.role in ADMIN_ROLES]
            if len(admins) <= 1:
                raise ForbiddenError("A group chatroom must keep at least one admin")

        participant.role = role
        await self.rooms.update_participant(chatroom_id, participant)
        return await self.rooms.get_populated(chatroom_id)

    async def mute_participant(
        self, chatroom_id: str, user_id: str, duration: timedelta
    ) -> ChatroomPopulated:
        room = await self.rooms.get(chatroom_id)
        participant = room.find_participant(user_id)
        if participant is None:
            raise NotFoundError("Participant")
        participant.mutedUntilTimestamp = int(time.time() + duration.total_seconds())
        await self.rooms.update_participant(chatroom_id, participant)
        return await self.rooms.get_populated(chatroom_id)

    async def unmute_participant(self, chatroom_id: str, user_id: str) -> ChatroomPopulated:
        room = await self.rooms.get(chatroom_id)
        participant = room.find_participant(user_id)
        if participant is None:
            raise NotFoundError("Participant")
        participant.mutedUntilTimestamp = None
        await self.rooms.update_participant(chatroom_id, participant)
        return await self.rooms.get_populated(chatroom_id)
