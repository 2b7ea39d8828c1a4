"""Shared test fixtures and configuration for backend tests.

Every app built here runs on the in-memory document store and KV store. The
auth endpoint of the test client is served by ``FakeAuthEndpoint`` through
``httpx.MockTransport``, so no test leaves the process.
"""
import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.chatrooms.schemas import Chatroom, ChatroomParticipant, ChatroomType, ParticipantRole
from app.clients.schemas import Client
from app.config import AppSettings
from app.kv.memory import MemoryKVStore
from app.main import create_app
from app.store.memory import MemoryDocumentStore
from app.users.schemas import User

ADMIN_KEY = "test-admin-key"
CLIENT_KEY = "test-client-key"
AUTH_ENDPOINT = "https://auth.example.test/me"

USERS = {
    "u1": User(id="u1", userId="ext-1", name="User One", username="user1", picture="p1", level=1),
    "u2": User(id="u2", userId="ext-2", name="User Two", username="user2", picture="p2", level=1),
    "u3": User(id="u3", userId="ext-3", name="User Three", username="user3", picture="p3", level=2),
}


def token_for(user_id: str) -> str:
    return f"token-{user_id}"


class FakeAuthEndpoint:
    """Identity provider double: ``token-<id>`` resolves to ``USERS[id]``.

    ``calls`` counts every request; ``responses`` forces a raw status/body
    for a given token.
    """

    def __init__(self) -> None:
        self.calls = 0
        self.responses = {}
        self.users = {token_for(uid): user for uid, user in USERS.items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
        if token in self.responses:
            status, body = self.responses[token]
            return httpx.Response(status, text=body)
        user = self.users.get(token)
        if user is None:
            return httpx.Response(401, json={"error": "invalid token"})
        return httpx.Response(200, json=user.model_dump())


def auth_headers(user_id: str) -> dict:
    return {"X-Client-Key": CLIENT_KEY, "Authorization": f"Bearer {token_for(user_id)}"}


def ws_url(user_id: str, client_key: str = CLIENT_KEY) -> str:
    return f"/api/ws?client_key={client_key}&token={token_for(user_id)}"


def next_event(ws, *types):
    """Receive frames until one of *types* arrives and return it."""
    while True:
        event = ws.receive_json()
        if event["type"] in types:
            return event


def events_until(ws, type_):
    """Receive frames up to and including the first of *type_*."""
    seen = []
    while True:
        event = ws.receive_json()
        seen.append(event)
        if event["type"] == type_:
            return seen


def make_room(room_id: str, admin: str, *members: str, is_group: bool = True) -> Chatroom:
    participants = [ChatroomParticipant(user=admin, role=ParticipantRole.ADMIN, joinedTimestamp=1)]
    participants += [
        ChatroomParticipant(user=uid, role=ParticipantRole.MEMBER, joinedTimestamp=1) for uid in members
    ]
    return Chatroom(
        id=room_id,
        name=room_id,
        isGroup=is_group,
        type=ChatroomType.PRIVATE,
        createdTimestamp=1,
        participants=participants,
    )


@pytest.fixture
def settings():
    settings = AppSettings()
    settings.secrets.admin.api_key = ADMIN_KEY
    return settings


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def kv():
    return MemoryKVStore()


@pytest.fixture
def auth_endpoint():
    return FakeAuthEndpoint()


@pytest.fixture
def seeded(store):
    """Store with the test client, users u1..u3, and rooms R (u1 admin, u2)
    and S (u3 admin)."""

    async def seed():
        client = await store.clients.create(Client(
            name="test-client",
            clientKey=CLIENT_KEY,
            authEndpoint=AUTH_ENDPOINT,
        ))
        for user in USERS.values():
            await store.users.create(user)
        await store.chatrooms.create(make_room("R", "u1", "u2"))
        await store.chatrooms.create(make_room("S", "u3"))
        return client

    return asyncio.run(seed())


@pytest.fixture
def app(settings, store, kv, auth_endpoint, seeded):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(auth_endpoint.handler))
    return create_app(settings, store=store, kv=kv, http_client=http_client)


@pytest.fixture
def api_client(app):
    """TestClient running the app lifespan (hub loop included)."""
    with TestClient(app) as client:
        yield client
