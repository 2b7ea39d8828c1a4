"""Rank checks applied before any participant-mutating operation.

Every HTTP handler that mutates a room goes through these helpers so the
policy is the same everywhere:

    - the caller must be a participant;
    - room edits, adding, muting and role changes need admin or above;
    - acting on another participant needs a strictly higher rank;
    - a new role must be strictly below the caller's own rank;
    - anyone may remove themselves.
"""
from app.chatrooms.schemas import (
    ChatroomParticipantPopulated,
    ChatroomPopulated,
    ParticipantRole,
)
from app.common.errors import ForbiddenError, NotFoundError


def require_participant(room: ChatroomPopulated, user_id: str) -> ChatroomParticipantPopulated:
    participant = room.find_participant(user_id)
    if participant is None:
        raise ForbiddenError("You are not a participant in this chatroom")
    return participant


def require_admin(caller: ChatroomParticipantPopulated) -> None:
    if caller.role.rank < ParticipantRole.ADMIN.rank:
        raise ForbiddenError("Admin role required")


def require_target(room: ChatroomPopulated, user_id: str) -> ChatroomParticipantPopulated:
    target = room.find_participant(user_id)
    if target is None:
        raise NotFoundError("Participant")
    return target


def require_outranks(
    caller: ChatroomParticipantPopulated, target: ChatroomParticipantPopulated
) -> None:
    if not caller.role.outranks(target.role):
        raise ForbiddenError("Insufficient rank for this participant")


def check_moderation(room: ChatroomPopulated, caller_id: str, target_id: str) -> None:
    """Mute/unmute: admin or above, acting on a strictly lower rank."""
    caller = require_participant(room, caller_id)
    require_admin(caller)
    if caller_id == target_id:
        raise ForbiddenError("You cannot moderate yourself")
    require_outranks(caller, require_target(room, target_id))


def check_role_change(
    room: ChatroomPopulated, caller_id: str, target_id: str, new_role: ParticipantRole
) -> None:
    caller = require_participant(room, caller_id)
    require_admin(caller)
    if caller_id == target_id:
        raise ForbiddenError("You cannot change your own role")
    require_outranks(caller, require_target(room, target_id))
    if not caller.role.outranks(new_role):
        raise ForbiddenError("Cannot grant a role at or above your own")


def check_removal(room: ChatroomPopulated, caller_id: str, target_id: str) -> None:
    caller = require_participant(room, caller_id)
    if caller_id == target_id:
        return
    if not room.isGroup:
        raise ForbiddenError("Participants of a direct chatroom can only leave")
    require_admin(caller)
    require_outranks(caller, require_target(room, target_id))
