"""WebSocket hub: live connection registry, presence and fan-out.

The hub owns the set of live clients. Every mutation of that set, and every
fan-out, happens inside one loop task that consumes a single inbox queue, so
register / unregister / broadcast are applied in one serial order and no two
fan-outs interleave.

Key features:
    - Bounded per-client send queues (slow consumers are evicted, the hub
      never blocks on a socket)
    - Presence mirrored into the shared KV (``ws:connected_users`` plus the
      user <-> socket maps, 24 h TTL)
    - Room-scoped fan-out driven by each client's ``chatrooms`` set
    - Room subscriptions kept in step with membership events published by
      the server (join, leave, room created/deleted)
    - Optional relay of frames between hub instances over KV pub/sub

Thread Safety:
    Designed for a single event loop. Not thread-safe.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import WebSocket
from pydantic import ValidationError

from app.chat.events import (
    ChatroomAction,
    ChatroomMetaPayload,
    Event,
    EventType,
    MembershipPayload,
    make_event,
)
from app.common.errors import ChatError
from app.kv import (
    CONNECTED_USERS_KEY,
    SOCKET_USER_PREFIX,
    USER_SOCKET_PREFIX,
    USER_SOCKETS_PREFIX,
)
from app.kv.base import KVStore
from app.users.schemas import User

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_SEND_QUEUE_SIZE = 256

DEFAULT_PRESENCE_TTL = 24 * 60 * 60

RELAY_RETRY_SECONDS = 1.0

# Inbox actions
_REGISTER = "register"
_UNREGISTER = "unregister"
_BROADCAST = "broadcast"
_STOP = "stop"


# =============================================================================
# Client
# =============================================================================


class Client:
    """One live socket connection.

    ``send`` is the outbound frame queue drained by the connection's write
    pump. A ``None`` in the queue tells the write pump to close the socket.
    """

    def __init__(self, websocket: WebSocket, user: User, queue_size: int = DEFAULT_SEND_QUEUE_SIZE):
        self.websocket = websocket
        self.user = user
        self.socket_id = uuid.uuid4().hex
        self.send: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.chatrooms: Set[str] = set()
        self.closed = False

    @property
    def user_id(self) -> str:
        return self.user.id

    def offer(self, frame: str) -> bool:
        """Queue *frame* without waiting. False means the queue is full."""
        if self.closed:
            return True
        try:
            self.send.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        """Close the outbound queue. Pending frames are discarded."""
        if self.closed:
            return
        self.closed = True
        while not self.send.empty():
            self.send.get_nowait()
        self.send.put_nowait(None)

    def __repr__(self) -> str:
        return f"Client(user={self.user_id}, socket={self.socket_id})"


# =============================================================================
# Hub
# =============================================================================


class Hub:
    """Per-process coordinator for live sockets.

    Args:
        kv: Shared KV used for presence and the optional relay.
        send_queue_size: Capacity of each client's outbound queue.
        presence_ttl: TTL in seconds of the user <-> socket maps.
        relay_channel: KV pub/sub channel for cross-instance relay, or None.
    """

    def __init__(
        self,
        kv: KVStore,
        send_queue_size: int = DEFAULT_SEND_QUEUE_SIZE,
        presence_ttl: int = DEFAULT_PRESENCE_TTL,
        relay_channel: Optional[str] = None,
    ) -> None:
        self.kv = kv
        self.send_queue_size = send_queue_size
        self.presence_ttl = presence_ttl
        self.relay_channel = relay_channel
        self.instance_id = uuid.uuid4().hex

        self.clients: Set[Client] = set()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._relay_task: Optional[asyncio.Task] = None
        self._accepting = False

    @property
    def running(self) -> bool:
        return self._accepting

    def new_client(self, websocket: WebSocket, user: User) -> Client:
        return Client(websocket, user, self.send_queue_size)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._accepting = True
        self._task = asyncio.create_task(self._run(), name="hub-loop")
        if self.relay_channel:
            self._relay_task = asyncio.create_task(self._relay_listen(), name="hub-relay")
        logger.info(f"[Hub] Started (instance={self.instance_id}, relay={self.relay_channel or 'off'})")

    async def stop(self) -> None:
        """Stop the loop and close every client's outbound queue."""
        if self._task is None:
            return
        self._accepting = False
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None

        await self._inbox.put((_STOP, None, None))
        await self._task
        self._task = None

        for client in list(self.clients):
            await self._drop(client)
        logger.info("[Hub] Stopped")

    # -------------------------------------------------------------------------
    # Public actions (each returns once the loop has applied it)
    # -------------------------------------------------------------------------

    async def register(self, client: Client) -> None:
        await self._submit(_REGISTER, client)

    async def unregister(self, client: Client) -> None:
        await self._submit(_UNREGISTER, client)

    async def broadcast(self, frame: str) -> None:
        """Fan out a frame that came from a client socket."""
        await self._submit(_BROADCAST, (frame, False, True))

    async def publish(self, event: Event) -> None:
        """Fan out a server-originated event.

        Unlike client frames, server events may change room subscriptions
        (join, leave, room created or deleted).
        """
        await self._submit(_BROADCAST, (event.encode(), True, True))

    async def _submit(self, action: str, arg: Any) -> None:
        if self._task is None or self._task.done():
            logger.debug(f"[Hub] Dropping {action}: hub is not running")
            return
        done = asyncio.get_running_loop().create_future()
        await self._inbox.put((action, arg, done))
        await done

    # -------------------------------------------------------------------------
    # Presence queries (read-through to the shared KV)
    # -------------------------------------------------------------------------

    async def is_user_connected(self, user_id: str) -> bool:
        return await self.kv.sismember(CONNECTED_USERS_KEY, user_id)

    async def connected_users(self) -> List[str]:
        return sorted(await self.kv.smembers(CONNECTED_USERS_KEY))

    async def get_user_socket(self, user_id: str) -> Optional[str]:
        return await self.kv.get(USER_SOCKET_PREFIX + user_id)

    async def get_socket_user(self, socket_id: str) -> Optional[str]:
        return await self.kv.get(SOCKET_USER_PREFIX + socket_id)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            action, arg, done = await self._inbox.get()
            if action == _STOP:
                break
            try:
                if action == _REGISTER:
                    await self._apply_register(arg)
                elif action == _UNREGISTER:
                    await self._apply_unregister(arg)
                elif action == _BROADCAST:
                    frame, trusted, relay = arg
                    await self._deliver(frame, trusted=trusted, relay=relay)
            except Exception:
                logger.exception(f"[Hub] Failed to apply {action}")
            finally:
                if done is not None and not done.done():
                    done.set_result(None)

        # release anyone still waiting on an action that will never run
        while not self._inbox.empty():
            _, _, done = self._inbox.get_nowait()
            if done is not None and not done.done():
                done.set_result(None)

    async def _apply_register(self, client: Client) -> None:
        self.clients.add(client)
        await self._set_presence(client)
        logger.info(f"[Hub] Registered {client} ({len(self.clients)} live)")
        event = make_event(EventType.CONNECT, payload=client.user, user_id=client.user_id)
        await self._deliver(event.encode(), trusted=True, relay=True)

    async def _apply_unregister(self, client: Client) -> None:
        if client not in self.clients:
            return
        event = await self._drop(client)
        logger.info(f"[Hub] Unregistered {client} ({len(self.clients)} live)")
        await self._deliver(event.encode(), trusted=True, relay=True)

    async def _drop(self, client: Client) -> Event:
        """Remove *client*, close its queue, clear its presence."""
        self.clients.discard(client)
        client.close()
        await self._clear_presence(client)
        return make_event(EventType.DISCONNECT, payload=client.user, user_id=client.user_id)

    async def _deliver(self, frame: str, trusted: bool, relay: bool) -> None:
        """Fan out *frame*, then any disconnect events caused by evictions."""
        pending: List[Tuple[str, bool]] = [(frame, trusted)]
        while pending:
            frame, trusted = pending.pop(0)
            if relay:
                await self._relay_publish(frame, trusted)
            for slow in self._fan_out(frame, trusted):
                logger.warning(f"[Hub] Evicting slow consumer {slow}")
                event = await self._drop(slow)
                pending.append((event.encode(), True))

    def _fan_out(self, frame: str, trusted: bool) -> List[Client]:
        """Queue *frame* on every eligible client; return those whose queue was full."""
        event = Event.decode(frame)
        if event is None:
            logger.debug("[Hub] Dropping undecodable frame")
            return []

        room_id = event.chatroomId
        if trusted and room_id:
            self._apply_membership(event, before_fan_out=True)

        slow = []
        for client in list(self.clients):
            if room_id and room_id not in client.chatrooms:
                continue
            if not client.offer(frame):
                slow.append(client)

        if trusted and room_id:
            self._apply_membership(event, before_fan_out=False)
        return slow

    def _apply_membership(self, event: Event, before_fan_out: bool) -> None:
        """Keep room subscriptions in step with membership events.

        Joins and new rooms subscribe before fan-out so newcomers see the
        event; leaves and deletions unsubscribe after it.
        """
        room_id = event.chatroomId
        try:
            if event.type in (EventType.USER_JOIN, EventType.USER_LEAVE):
                user_ids = {MembershipPayload.model_validate(event.payload).userId}
                subscribe = event.type == EventType.USER_JOIN
            elif event.type == EventType.CHATROOM_META:
                meta = ChatroomMetaPayload.model_validate(event.payload)
                if meta.action == ChatroomAction.CREATED:
                    user_ids, subscribe = set(meta.participant_ids()), True
                elif meta.action == ChatroomAction.DELETED:
                    user_ids, subscribe = None, False
                else:
                    return
            else:
                return
        except ValidationError:
            logger.debug(f"[Hub] Ignoring malformed {event.type.value} payload")
            return

        if subscribe != before_fan_out:
            return
        for client in self.clients:
            if user_ids is not None and client.user_id not in user_ids:
                continue
            if subscribe:
                client.chatrooms.add(room_id)
            else:
                client.chatrooms.discard(room_id)

    # -------------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------------

    async def _set_presence(self, client: Client) -> None:
        try:
            await self.kv.sadd(CONNECTED_USERS_KEY, client.user_id)
            await self.kv.sadd(USER_SOCKETS_PREFIX + client.user_id, client.socket_id)
            await self.kv.set(USER_SOCKET_PREFIX + client.user_id, client.socket_id, ttl=self.presence_ttl)
            await self.kv.set(SOCKET_USER_PREFIX + client.socket_id, client.user_id, ttl=self.presence_ttl)
        except ChatError as e:
            logger.error(f"[Hub] Presence write failed for {client}: {e.message}")

    async def _clear_presence(self, client: Client) -> None:
        """Drop *client*'s socket from presence.

        ``ws:user_sockets:<user>`` holds the live sockets of a user on every
        instance; the user stays connected until that set is empty.
        """
        sockets_key = USER_SOCKETS_PREFIX + client.user_id
        try:
            await self.kv.delete(SOCKET_USER_PREFIX + client.socket_id)
            await self.kv.srem(sockets_key, client.socket_id)
            remaining = await self.kv.smembers(sockets_key)
            if not remaining:
                await self.kv.delete(USER_SOCKET_PREFIX + client.user_id, sockets_key)
                await self.kv.srem(CONNECTED_USERS_KEY, client.user_id)
                return
            current = await self.kv.get(USER_SOCKET_PREFIX + client.user_id)
            if current not in (None, client.socket_id):
                # a newer socket owns the user mapping
                return
            local = [c.socket_id for c in self.clients if c.socket_id in remaining]
            successor = local[0] if local else sorted(remaining)[0]
            await self.kv.set(USER_SOCKET_PREFIX + client.user_id, successor, ttl=self.presence_ttl)
        except ChatError as e:
            logger.error(f"[Hub] Presence cleanup failed for {client}: {e.message}")

    # -------------------------------------------------------------------------
    # Cross-instance relay
    # -------------------------------------------------------------------------

    async def _relay_publish(self, frame: str, trusted: bool) -> None:
        if not self.relay_channel:
            return
        envelope = json.dumps({"origin": self.instance_id, "trusted": trusted, "frame": frame})
        try:
            await self.kv.publish(self.relay_channel, envelope)
        except ChatError as e:
            logger.warning(f"[Hub] Relay publish failed: {e.message}")

    async def _relay_listen(self) -> None:
        """Feed frames published by other instances into the local fan-out.

        A lost subscription is re-established after ``RELAY_RETRY_SECONDS``.
        """
        while True:
            try:
                async for _, payload in self.kv.subscribe(self.relay_channel):
                    await self._relay_receive(payload)
            except ChatError as e:
                logger.warning(f"[Hub] Relay subscription failed: {e.message}; retrying")
            await asyncio.sleep(RELAY_RETRY_SECONDS)

    async def _relay_receive(self, payload: str) -> None:
        try:
            envelope: Dict[str, Any] = json.loads(payload)
            origin = envelope["origin"]
            frame = envelope["frame"]
        except (ValueError, KeyError, TypeError):
            logger.debug("[Hub] Ignoring malformed relay envelope")
            return
        if origin == self.instance_id:
            return
        await self._submit(_BROADCAST, (frame, bool(envelope.get("trusted")), False))
