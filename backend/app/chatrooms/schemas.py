"""Chatroom entities, role hierarchy and request bodies."""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.users.schemas import User


class ChatroomType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    SQUAD = "squad"


class ParticipantRole(str, Enum):
    """Participant role, ordered ``super_admin > admin > member``."""
    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def outranks(self, other: "ParticipantRole") -> bool:
        return self.rank > other.rank


_ROLE_RANK = {
    ParticipantRole.MEMBER: 0,
    ParticipantRole.ADMIN: 1,
    ParticipantRole.SUPER_ADMIN: 2,
}


class ChatroomParticipant(BaseModel):
    """A user bound to a room. Timestamps are seconds since epoch."""
    user: str
    role: ParticipantRole = ParticipantRole.MEMBER
    joinedTimestamp: int = 0
    mutedUntilTimestamp: Optional[int] = None

    def is_muted(self, now: float) -> bool:
        return self.mutedUntilTimestamp is not None and self.mutedUntilTimestamp > now


class Chatroom(BaseModel):
    id: Optional[str] = None
    name: str = ""
    isGroup: bool = False
    type: ChatroomType = ChatroomType.PRIVATE
    createdTimestamp: int = 0
    lastMessage: Optional[str] = None
    lastSender: Optional[str] = None
    lastMessageTimestamp: Optional[int] = None
    messagesCount: int = 0
    participants: List[ChatroomParticipant] = Field(default_factory=list)

    def find_participant(self, user_id: str) -> Optional[ChatroomParticipant]:
        for participant in self.participants:
            if participant.user == user_id:
                return participant
        return None

    def participant_ids(self) -> List[str]:
        return [p.user for p in self.participants]


class ChatroomParticipantPopulated(BaseModel):
    user: User
    role: ParticipantRole = ParticipantRole.MEMBER
    joinedTimestamp: int = 0
    mutedUntilTimestamp: Optional[int] = None

    def is_muted(self, now: float) -> bool:
        return self.mutedUntilTimestamp is not None and self.mutedUntilTimestamp > now


class ChatroomPopulated(BaseModel):
    """Chatroom with participant and last-sender references resolved to users."""
    id: Optional[str] = None
    name: str = ""
    isGroup: bool = False
    type: ChatroomType = ChatroomType.PRIVATE
    createdTimestamp: int = 0
    lastMessage: Optional[str] = None
    lastSender: Optional[User] = None
    lastMessageTimestamp: Optional[int] = None
    messagesCount: int = 0
    participants: List[ChatroomParticipantPopulated] = Field(default_factory=list)

    def find_participant(self, user_id: str) -> Optional[ChatroomParticipantPopulated]:
        for participant in self.participants:
            if participant.user.id == user_id:
                return participant
        return None

    def participant_ids(self) -> List[str]:
        return [p.user.id for p in self.participants if p.user.id]


class ChatroomFilter(BaseModel):
    participantId: Optional[str] = None
    type: Optional[ChatroomType] = None
    isGroup: Optional[bool] = None
    startTime: Optional[int] = None
    endTime: Optional[int] = None


# =============================================================================
# Request bodies
# =============================================================================


class CreateChatroomRequest(BaseModel):
    name: str = ""
    type: ChatroomType
    isGroup: bool = False
    participants: List[str] = Field(default_factory=list)


class UpdateChatroomRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[ChatroomType] = None


class AddParticipantRequest(BaseModel):
    userId: str = Field(..., min_length=1)


class UpdateParticipantRoleRequest(BaseModel):
    role: ParticipantRole


class MuteParticipantRequest(BaseModel):
    duration: int = Field(..., ge=1, description="Mute duration in minutes")
