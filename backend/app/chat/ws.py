"""WebSocket endpoint and presence queries.

Endpoints:
    WS  /ws?client_key=...&token=...   - Authenticated event stream
    GET /ws/connected                  - Connected user ids
    GET /ws/connected/{user_id}        - Whether one user is connected

Connection lifecycle:
    1. Validate the client key, then the bearer token. A failure rejects the
       handshake with the matching HTTP status before the upgrade.
    2. Accept, load the user's room subscriptions, register with the hub.
    3. Run the write pump (hub -> socket) as a task and the read pump
       (socket -> hub) inline until either side ends.
    4. Unregister (idempotent) and wait for the write pump to finish.

Read pump rules:
    - ``userId`` and ``timestamp`` on every inbound frame are overwritten
      with the authenticated user and server time.
    - Frames without a ``chatroomId``, server-only types, and frames for a
      room the socket is not subscribed to are dropped.
    - A frame rejected by business logic (muted, not a participant, bad
      payload) is never fanned out; the sender alone gets an ``error`` event.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, WebSocket
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from app.auth.dependencies import bearer_token, require_user
from app.common.errors import ChatError, InvalidPayloadError
from app.common.schemas import envelope
from app.services import Services, get_services
from app.users.schemas import User

from .events import (
    SERVER_ONLY_EVENTS,
    ErrorPayload,
    Event,
    EventType,
    MessagePayload,
    ReadPayload,
    TypingPayload,
    make_event,
    now_ms,
)
from .hub import Client, Hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

# Close code for a handshake refused after the server could not send an HTTP denial.
POLICY_VIOLATION = 1008
GOING_AWAY = 1001


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    client_key: str = Query(default=""),
    token: str = Query(default=""),
    x_client_key: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Authenticate, then pump events between the socket and the hub."""
    services: Services = get_services(websocket)
    hub = services.hub

    if not hub.running:
        await websocket.close(code=GOING_AWAY)
        return

    try:
        client = await services.clients.validate_key(client_key or x_client_key)
        user = await services.auth.authenticate(client.id, token or bearer_token(authorization))
    except ChatError as e:
        logger.info(f"[WS] Handshake rejected ({e.status_code}): {e.message}")
        await _deny(websocket, e)
        return

    await websocket.accept()
    conn = hub.new_client(websocket, user)
    try:
        conn.chatrooms.update(await services.chatrooms.room_ids_for(user.id))
    except ChatError as e:
        logger.warning(f"[WS] Could not load rooms for {user.id}: {e.message}")

    await hub.register(conn)
    writer = asyncio.create_task(_write_pump(conn, hub), name=f"ws-write-{conn.socket_id}")
    try:
        await _read_pump(conn, services)
    finally:
        await hub.unregister(conn)
        # the hub may already be stopped; make sure the writer sees end-of-stream
        conn.close()
        await writer


async def _deny(websocket: WebSocket, error: ChatError) -> None:
    response = JSONResponse(error.to_dict(), status_code=error.status_code)
    try:
        await websocket.send_denial_response(response)
    except RuntimeError:
        # server without the denial-response extension
        await websocket.close(code=POLICY_VIOLATION, reason=error.message)


# =============================================================================
# Pumps
# =============================================================================


async def _write_pump(conn: Client, hub: Hub) -> None:
    """Drain the client's queue onto the socket until end-of-stream."""
    websocket = conn.websocket
    try:
        while True:
            frame = await conn.send.get()
            if frame is None:
                break
            await websocket.send_text(frame)
    except Exception as e:
        logger.debug(f"[WS] Write failed for {conn}: {e}")
        await hub.unregister(conn)
        return

    if websocket.application_state == WebSocketState.CONNECTED:
        try:
            await websocket.close(code=1000)
        except Exception as e:
            logger.debug(f"[WS] Close failed for {conn}: {e}")


async def _read_pump(conn: Client, services: Services) -> None:
    websocket = conn.websocket
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        frame = message.get("text")
        if frame is None and message.get("bytes") is not None:
            frame = message["bytes"].decode("utf-8", errors="replace")
        if frame is None:
            continue
        if conn.closed:
            # evicted; wait for the peer to see the close
            continue

        event = Event.decode(frame)
        if event is None:
            _send_error(conn, None, InvalidPayloadError("Malformed event"))
            continue
        if event.type in SERVER_ONLY_EVENTS or not event.chatroomId:
            logger.debug(f"[WS] Dropping {event.type.value} frame from {conn}")
            continue
        if event.chatroomId not in conn.chatrooms:
            logger.debug(f"[WS] {conn} is not subscribed to {event.chatroomId}")
            continue

        event.userId = conn.user_id
        event.timestamp = now_ms()
        try:
            event = await _dispatch(event, conn.user, services)
        except ChatError as e:
            logger.info(f"[WS] Rejected {event.type.value} from {conn}: {e.message}")
            _send_error(conn, event.chatroomId, e)
            continue

        await services.hub.broadcast(event.encode())


async def _dispatch(event: Event, user: User, services: Services) -> Event:
    """Apply the side effects of an inbound event and shape its payload."""
    payload = event.payload if isinstance(event.payload, dict) else {}

    if event.type == EventType.MESSAGE:
        try:
            body = MessagePayload.model_validate(payload)
        except ValidationError:
            raise InvalidPayloadError("Invalid message payload")
        if not body.message:
            raise InvalidPayloadError("Message text is required")
        chat = await services.chat.send_message(event.chatroomId, user.id, body.message)
        event.payload = chat.model_dump(mode="json")

    elif event.type in (EventType.TYPING_START, EventType.TYPING_STOP):
        event.payload = TypingPayload(
            chatroomId=event.chatroomId,
            userId=user.id,
            status=event.type == EventType.TYPING_START,
        ).model_dump(mode="json")

    elif event.type == EventType.MESSAGE_READ:
        try:
            read = ReadPayload.model_validate(payload)
        except ValidationError:
            raise InvalidPayloadError("Invalid read payload")
        read.chatroomId = event.chatroomId
        read.userId = user.id
        event.payload = read.model_dump(mode="json")

    return event


def _send_error(conn: Client, chatroom_id: Optional[str], error: ChatError) -> None:
    event = make_event(
        EventType.ERROR,
        ErrorPayload(code=error.status_code, message=error.message),
        chatroom_id=chatroom_id,
        user_id=conn.user_id,
    )
    conn.offer(event.encode())


# =============================================================================
# Presence
# =============================================================================


@router.get("/ws/connected", dependencies=[Depends(require_user)])
async def connected_users(services: Services = Depends(get_services)) -> JSONResponse:
    users = await services.hub.connected_users()
    return JSONResponse(envelope(200, users))


@router.get("/ws/connected/{user_id}", dependencies=[Depends(require_user)])
async def user_connected(user_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    connected = await services.hub.is_user_connected(user_id)
    return JSONResponse(envelope(200, {"userId": user_id, "connected": connected}))
