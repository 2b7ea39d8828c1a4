"""WebSocket event envelope and payload shapes.

Every frame on the wire is a JSON text frame::

    {"type": "message", "chatroomId": "...", "userId": "...",
     "timestamp": 1707321600123, "payload": {...}}

``timestamp`` is milliseconds since epoch and always assigned by the server.
"""
import json
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError


class EventType(str, Enum):
    # Connection events
    CONNECT = "connect"
    DISCONNECT = "disconnect"

    # Chat events
    MESSAGE = "message"
    MESSAGE_READ = "message_read"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    USER_JOIN = "user_join"
    USER_LEAVE = "user_leave"
    USER_MUTED = "user_muted"
    USER_UNMUTED = "user_unmuted"
    ROLE_UPDATED = "role_updated"
    CHATROOM_META = "chatroom_meta"
    ERROR = "error"


# Event types only the server may originate.
SERVER_ONLY_EVENTS = frozenset({
    EventType.CONNECT,
    EventType.DISCONNECT,
    EventType.ERROR,
})


class Event(BaseModel):
    type: EventType
    chatroomId: Optional[str] = None
    userId: Optional[str] = None
    payload: Optional[Any] = None
    timestamp: int = 0

    def encode(self) -> str:
        """Serialize to a JSON text frame, omitting empty top-level fields."""
        data = self.model_dump(mode="json")
        return json.dumps(
            {k: v for k, v in data.items() if v is not None},
            separators=(",", ":"),
        )

    @classmethod
    def decode(cls, frame: str) -> Optional["Event"]:
        """Parse a text frame, returning None when it is not a valid event."""
        try:
            return cls.model_validate_json(frame)
        except ValidationError:
            return None


class MessagePayload(BaseModel):
    id: Optional[str] = None
    message: str
    type: str = "text"
    replyTo: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class TypingPayload(BaseModel):
    chatroomId: str = ""
    userId: str = ""
    status: bool = True


class ReadPayload(BaseModel):
    chatroomId: str = ""
    messageId: str = ""
    userId: str = ""


class ErrorPayload(BaseModel):
    code: int
    message: str


class MembershipPayload(BaseModel):
    """Payload of user_join / user_leave / user_muted / user_unmuted / role_updated."""
    userId: str
    role: Optional[str] = None
    mutedUntilTimestamp: Optional[int] = None
    actorId: Optional[str] = None


class ChatroomAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChatroomMetaPayload(BaseModel):
    action: ChatroomAction
    chatroom: Dict[str, Any]

    def participant_ids(self) -> List[str]:
        ids = []
        for participant in self.chatroom.get("participants") or []:
            user = participant.get("user")
            # populated rooms embed the user, raw rooms carry the id
            uid = user.get("id") if isinstance(user, dict) else user
            if uid:
                ids.append(uid)
        return ids


def now_ms() -> int:
    return int(time.time() * 1000)


def make_event(
    type_: EventType,
    payload: Any = None,
    chatroom_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Event:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return Event(
        type=type_,
        chatroomId=chatroom_id,
        userId=user_id,
        payload=payload,
        timestamp=now_ms(),
    )
