"""Chatroom endpoints.

Endpoints:
    POST   /v1/chatrooms                                      - Create a room
    GET    /v1/chatrooms                                      - List rooms
    GET    /v1/chatrooms/{room_id}                            - Fetch a room
    PUT    /v1/chatrooms/{room_id}                            - Rename / retype
    DELETE /v1/chatrooms/{room_id}                            - Delete a room
    POST   /v1/chatrooms/{room_id}/participants               - Add a participant
    DELETE /v1/chatrooms/{room_id}/participants/{user_id}     - Remove / leave
    PUT    /v1/chatrooms/{room_id}/participants/{user_id}/role - Change role
    POST   /v1/chatrooms/{room_id}/participants/{user_id}/mute - Mute
    DELETE /v1/chatrooms/{room_id}/participants/{user_id}/mute - Unmute

Every mutation is checked with ``app.chatrooms.permissions`` first and then
published through the hub so live sockets see it.
"""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.auth.dependencies import require_user
from app.chat.events import (
    ChatroomAction,
    ChatroomMetaPayload,
    EventType,
    MembershipPayload,
    make_event,
)
from app.common.errors import NotFoundError
from app.common.schemas import Pagination, envelope, page_params, paginated
from app.services import Services, get_services
from app.users.schemas import User

from . import permissions
from .schemas import (
    AddParticipantRequest,
    ChatroomFilter,
    ChatroomPopulated,
    ChatroomType,
    CreateChatroomRequest,
    MuteParticipantRequest,
    UpdateChatroomRequest,
    UpdateParticipantRoleRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/chatrooms", tags=["chatrooms"])


async def _load(services: Services, room_id: str) -> ChatroomPopulated:
    room = await services.chatrooms.get(room_id)
    if room is None:
        raise NotFoundError("Chatroom")
    return room


async def _publish_meta(services: Services, action: ChatroomAction, room: dict) -> None:
    payload = ChatroomMetaPayload(action=action, chatroom=room)
    await services.hub.publish(
        make_event(EventType.CHATROOM_META, payload, chatroom_id=room.get("id"))
    )


async def _publish_membership(
    services: Services,
    type_: EventType,
    room_id: str,
    actor: User,
    target_id: str,
    **extra,
) -> None:
    payload = MembershipPayload(userId=target_id, actorId=actor.id, **extra)
    await services.hub.publish(make_event(type_, payload, chatroom_id=room_id, user_id=actor.id))


def _room_data(room: ChatroomPopulated) -> dict:
    return room.model_dump(mode="json")


@router.post("", status_code=201)
async def create_chatroom(
    body: CreateChatroomRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Create a room. The caller becomes its admin."""
    room = await services.chatrooms.create(
        name=body.name,
        type=body.type,
        is_group=body.isGroup,
        creator_id=user.id,
        participant_ids=body.participants,
    )
    data = _room_data(room)
    await _publish_meta(services, ChatroomAction.CREATED, data)
    return JSONResponse(envelope(201, data, "Chatroom created"), status_code=201)


@router.get("")
async def list_chatrooms(
    participantId: Optional[str] = Query(default=None),
    type: Optional[ChatroomType] = Query(default=None),
    isGroup: Optional[bool] = Query(default=None),
    startTime: Optional[int] = Query(default=None),
    endTime: Optional[int] = Query(default=None),
    pag: Pagination = Depends(page_params),
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """List rooms, by default the caller's own.

    Only public rooms are listed for a participant other than the caller.
    """
    filter = ChatroomFilter(
        participantId=participantId or user.id,
        type=type,
        isGroup=isGroup,
        startTime=startTime,
        endTime=endTime,
    )
    if filter.participantId != user.id:
        filter.type = ChatroomType.PUBLIC
    rooms, total = await services.chatrooms.list(filter, pag)
    return JSONResponse(envelope(200, paginated(rooms, total, pag)))


@router.get("/{room_id}")
async def get_chatroom(
    room_id: str,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    room = await _load(services, room_id)
    if room.type != ChatroomType.PUBLIC:
        permissions.require_participant(room, user.id)
    return JSONResponse(envelope(200, _room_data(room)))


@router.put("/{room_id}")
async def update_chatroom(
    room_id: str,
    body: UpdateChatroomRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    room = await _load(services, room_id)
    permissions.require_admin(permissions.require_participant(room, user.id))
    room = await services.chatrooms.update(room_id, name=body.name, type=body.type)
    data = _room_data(room)
    await _publish_meta(services, ChatroomAction.UPDATED, data)
    return JSONResponse(envelope(200, data, "Chatroom updated"))


@router.delete("/{room_id}")
async def delete_chatroom(
    room_id: str,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    room = await _load(services, room_id)
    permissions.require_admin(permissions.require_participant(room, user.id))
    await services.chatrooms.delete(room_id)
    logger.info("[chatrooms] %s deleted by %s", room_id, user.id)
    await _publish_meta(services, ChatroomAction.DELETED, {"id": room_id})
    return JSONResponse(envelope(200, message="Chatroom deleted"))


# =============================================================================
# Participants
# =============================================================================


@router.post("/{room_id}/participants")
async def add_participant(
    room_id: str,
    body: AddParticipantRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    room = await _load(services, room_id)
    permissions.require_admin(permissions.require_participant(room, user.id))
    room = await services.chatrooms.add_participant(room_id, body.userId)
    await _publish_membership(services, EventType.USER_JOIN, room_id, user, body.userId, role="member")
    return JSONResponse(envelope(200, _room_data(room), "Participant added"))


@router.delete("/{room_id}/participants/{user_id}")
async def remove_participant(
    room_id: str,
    user_id: str,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Remove a participant, or leave when *user_id* is the caller.

    Leaving a direct room deletes it.
    """
    room = await _load(services, room_id)
    permissions.check_removal(room, user.id, user_id)
    updated = await services.chatrooms.remove_participant(room_id, user_id)
    await _publish_membership(services, EventType.USER_LEAVE, room_id, user, user_id)
    if updated is None:
        await _publish_meta(services, ChatroomAction.DELETED, {"id": room_id})
        return JSONResponse(envelope(200, message="Chatroom deleted"))
    return JSONResponse(envelope(200, _room_data(updated), "Participant removed"))


@router.put("/{room_id}/participants/{user_id}/role")
async def update_participant_role(
    room_id: str,
    user_id: str,
    body: UpdateParticipantRoleRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    room = await _load(services, room_id)
    permissions.check_role_change(room, user.id, user_id, body.role)
    room = await services.chatrooms.update_participant_role(room_id, user_id, body.role)
    await _publish_membership(
        services, EventType.ROLE_UPDATED, room_id, user, user_id, role=body.role.value
    )
    return JSONResponse(envelope(200, _room_data(room), "Role updated"))


@router.post("/{room_id}/participants/{user_id}/mute")
async def mute_participant(
    room_id: str,
    user_id: str,
    body: MuteParticipantRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Mute a participant for ``duration`` minutes."""
    room = await _load(services, room_id)
    permissions.check_moderation(room, user.id, user_id)
    room = await services.chatrooms.mute_participant(
        room_id, user_id, timedelta(minutes=body.duration)
    )
    muted_until = room.find_participant(user_id).mutedUntilTimestamp
    await _publish_membership(
        services, EventType.USER_MUTED, room_id, user, user_id, mutedUntilTimestamp=muted_until
    )
    return JSONResponse(envelope(200, _room_data(room), "Participant muted"))


@router.delete("/{room_id}/participants/{user_id}/mute")
async def unmute_participant(
    room_id: str,
    user_id: str,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    room = await _load(services, room_id)
    permissions.check_moderation(room, user.id, user_id)
    room = await services.chatrooms.unmute_participant(room_id, user_id)
    await _publish_membership(services, EventType.USER_UNMUTED, room_id, user, user_id)
    return JSONResponse(envelope(200, _room_data(room), "Participant unmuted"))
