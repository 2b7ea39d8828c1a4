"""Chat message entity and HTTP request bodies."""
from typing import Optional

from pydantic import BaseModel, Field

from app.users.schemas import User


class Chat(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Store-assigned identifier.
        message: Message text.
        sender: Sender user id (must be a room participant at write time).
        receiver: Other participant's user id, set only for direct rooms.
        chatroom: Room id.
        createdTimestamp: Server-assigned seconds since epoch (immutable).
        premium: Optional client-defined flag.
    """
    id: Optional[str] = None
    message: str
    sender: str
    receiver: Optional[str] = None
    chatroom: str
    createdTimestamp: int = 0
    premium: Optional[bool] = None


class ChatPopulated(BaseModel):
    id: Optional[str] = None
    message: str
    sender: User
    receiver: Optional[User] = None
    chatroom: str
    createdTimestamp: int = 0
    premium: Optional[bool] = None


class ChatFilter(BaseModel):
    chatroomId: Optional[str] = None
    senderId: Optional[str] = None
    receiverId: Optional[str] = None
    startTime: Optional[int] = None
    endTime: Optional[int] = None


class SendMessageRequest(BaseModel):
    message: str = Field(..., min_length=1)


class SendDirectMessageRequest(BaseModel):
    receiverId: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class UpdateChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
