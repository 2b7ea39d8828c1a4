"""Chat message endpoints.

Endpoints:
    GET    /v1/chats                  - List messages of a room
    GET    /v1/chats/{chat_id}        - Fetch one message
    PUT    /v1/chats/{chat_id}        - Edit (sender only)
    DELETE /v1/chats/{chat_id}        - Delete (sender only)
    POST   /v1/chats/rooms/{room_id}  - Send to a room
    POST   /v1/chats/direct           - Send to a user's direct room

Messages sent here are fanned out through the hub exactly like messages sent
over a socket.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.auth.dependencies import require_user
from app.chatrooms import permissions
from app.chatrooms.schemas import ChatroomPopulated
from app.common.errors import BadRequestError, ForbiddenError, NotFoundError
from app.common.schemas import Pagination, envelope, page_params, paginated
from app.services import Services, get_services
from app.users.schemas import User

from .events import ChatroomAction, ChatroomMetaPayload, EventType, make_event
from .schemas import (
    Chat,
    ChatFilter,
    ChatPopulated,
    SendDirectMessageRequest,
    SendMessageRequest,
    UpdateChatRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/chats", tags=["chats"])


async def _room_for(services: Services, room_id: str, user: User) -> ChatroomPopulated:
    room = await services.chatrooms.get(room_id)
    if room is None:
        raise NotFoundError("Chatroom")
    permissions.require_participant(room, user.id)
    return room


async def _own_chat(services: Services, chat_id: str, user: User) -> ChatPopulated:
    chat = await services.chat.get(chat_id)
    if chat is None:
        raise NotFoundError("Chat")
    if chat.sender.id != user.id:
        raise ForbiddenError("Only the sender can modify this message")
    return chat


async def _publish_message(services: Services, chat: Chat) -> None:
    event = make_event(
        EventType.MESSAGE,
        chat,
        chatroom_id=chat.chatroom,
        user_id=chat.sender,
    )
    await services.hub.publish(event)


@router.get("")
async def list_chats(
    chatroomId: Optional[str] = Query(default=None),
    senderId: Optional[str] = Query(default=None),
    receiverId: Optional[str] = Query(default=None),
    startTime: Optional[int] = Query(default=None),
    endTime: Optional[int] = Query(default=None),
    pag: Pagination = Depends(page_params),
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """List messages of one room, newest first.

    The caller must be a participant of ``chatroomId``.
    """
    if not chatroomId:
        raise BadRequestError("chatroomId is required")
    await _room_for(services, chatroomId, user)
    filter = ChatFilter(
        chatroomId=chatroomId,
        senderId=senderId,
        receiverId=receiverId,
        startTime=startTime,
        endTime=endTime,
    )
    chats, total = await services.chat.list(filter, pag)
    return JSONResponse(envelope(200, paginated(chats, total, pag)))


@router.get("/{chat_id}")
async def get_chat(
    chat_id: str,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    chat = await services.chat.get(chat_id)
    if chat is None:
        raise NotFoundError("Chat")
    await _room_for(services, chat.chatroom, user)
    return JSONResponse(envelope(200, chat.model_dump(mode="json")))


@router.put("/{chat_id}")
async def update_chat(
    chat_id: str,
    body: UpdateChatRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    await _own_chat(services, chat_id, user)
    chat = await services.chat.update(chat_id, body.message)
    return JSONResponse(envelope(200, chat.model_dump(mode="json"), "Message updated"))


@router.delete("/{chat_id}")
async def delete_chat(
    chat_id: str,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    await _own_chat(services, chat_id, user)
    await services.chat.remove(chat_id)
    return JSONResponse(envelope(200, message="Message deleted"))


@router.post("/rooms/{room_id}", status_code=201)
async def send_room_message(
    room_id: str,
    body: SendMessageRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    chat = await services.chat.send_message(room_id, user.id, body.message)
    await _publish_message(services, chat)
    return JSONResponse(envelope(201, chat.model_dump(mode="json"), "Message sent"), status_code=201)


@router.post("/direct", status_code=201)
async def send_direct_message(
    body: SendDirectMessageRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Send to the caller's one-to-one room with ``receiverId``, creating it
    on first contact."""
    if body.receiverId == user.id:
        raise BadRequestError("Cannot send a direct message to yourself")
    chat, room, created = await services.chat.send_direct_message(user.id, body.receiverId, body.message)
    room_data = room.model_dump(mode="json")
    if created:
        await services.hub.publish(make_event(
            EventType.CHATROOM_META,
            ChatroomMetaPayload(action=ChatroomAction.CREATED, chatroom=room_data),
            chatroom_id=room.id,
        ))
    await _publish_message(services, chat)
    return JSONResponse(
        envelope(201, {"chat": chat.model_dump(mode="json"), "chatroom": room_data}, "Message sent"),
        status_code=201,
    )
