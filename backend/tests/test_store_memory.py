"""Tests for the in-process document store."""
import pytest

from app.chat.schemas import Chat, ChatFilter
from app.chatrooms.schemas import ChatroomFilter, ChatroomParticipant, ChatroomType, ParticipantRole
from app.clients.schemas import Client
from app.common.errors import ConflictError, NotFoundError
from app.common.schemas import Pagination
from app.store.memory import MemoryDocumentStore
from app.users.schemas import User
from conftest import make_room


@pytest.fixture
def store():
    return MemoryDocumentStore()


def chat(room_id, sender, ts, text="hi"):
    return Chat(message=text, sender=sender, chatroom=room_id, createdTimestamp=ts)


# =============================================================================
# Users and clients
# =============================================================================


@pytest.mark.asyncio
async def test_create_assigns_id_and_get_returns_copy(store):
    user = await store.users.create(User(userId="ext-1", username="alice"))
    assert len(user.id) == 24

    fetched = await store.users.get(user.id)
    fetched.username = "mallory"
    assert (await store.users.get(user.id)).username == "alice"


@pytest.mark.asyncio
async def test_user_unique_indexes(store):
    await store.users.create(User(userId="ext-1", username="alice"))
    with pytest.raises(ConflictError):
        await store.users.create(User(userId="ext-1", username="bob"))
    with pytest.raises(ConflictError):
        await store.users.create(User(userId="ext-2", username="alice"))

    bob = await store.users.create(User(userId="ext-2", username="bob"))
    bob.username = "alice"
    with pytest.raises(ConflictError):
        await store.users.update(bob)


@pytest.mark.asyncio
async def test_user_lookups(store):
    alice = await store.users.create(User(userId="ext-1", username="alice"))
    assert (await store.users.get_by_external_id("ext-1")).id == alice.id
    with pytest.raises(NotFoundError):
        await store.users.get_by_external_id("ext-9")
    with pytest.raises(NotFoundError):
        await store.users.get("missing")

    found = await store.users.get_many([alice.id, "missing", alice.id])
    assert list(found) == [alice.id]


@pytest.mark.asyncio
async def test_client_key_is_unique(store):
    await store.clients.create(Client(name="a", clientKey="k", authEndpoint="http://a"))
    with pytest.raises(ConflictError):
        await store.clients.create(Client(name="b", clientKey="k", authEndpoint="http://b"))
    assert (await store.clients.get_by_key("k")).name == "a"
    with pytest.raises(NotFoundError):
        await store.clients.get_by_key("nope")


@pytest.mark.asyncio
async def test_get_all_is_newest_first_and_paginated(store):
    for i in range(5):
        await store.users.create(User(userId=f"ext-{i}", username=f"user{i}"))

    page, total = await store.users.get_all(Pagination(page=1, limit=2))
    assert total == 5
    assert [u.username for u in page] == ["user4", "user3"]

    page, total = await store.users.get_all(Pagination(page=3, limit=2))
    assert [u.username for u in page] == ["user0"]

    page, _ = await store.users.get_all(Pagination(page=4, limit=2))
    assert page == []


# =============================================================================
# Chats
# =============================================================================


@pytest.mark.asyncio
async def test_chat_filters(store):
    await store.chats.create(chat("R", "u1", 100))
    await store.chats.create(chat("R", "u2", 200))
    await store.chats.create(chat("S", "u1", 300))

    items, total = await store.chats.get_all(ChatFilter(chatroomId="R"), Pagination())
    assert total == 2
    assert [c.createdTimestamp for c in items] == [200, 100]

    items, _ = await store.chats.get_all(ChatFilter(senderId="u1", startTime=150), Pagination())
    assert [c.chatroom for c in items] == ["S"]

    items, _ = await store.chats.get_all(ChatFilter(endTime=100), Pagination())
    assert len(items) == 1


@pytest.mark.asyncio
async def test_chat_update_keeps_created_timestamp(store):
    stored = await store.chats.create(chat("R", "u1", 100, text="old"))
    edited = stored.model_copy(update={"message": "new", "createdTimestamp": 999})
    result = await store.chats.update(edited)
    assert result.message == "new"
    assert result.createdTimestamp == 100


@pytest.mark.asyncio
async def test_delete_by_chatroom(store):
    await store.chats.create(chat("R", "u1", 1))
    await store.chats.create(chat("R", "u1", 2))
    await store.chats.create(chat("S", "u1", 3))
    assert await store.chats.delete_by_chatroom("R") == 2
    _, total = await store.chats.get_all(ChatFilter(), Pagination())
    assert total == 1


@pytest.mark.asyncio
async def test_populated_chat_uses_placeholder_for_missing_user(store):
    await store.users.create(User(id="u1", userId="ext-1", username="alice"))
    stored = await store.chats.create(Chat(
        message="hi", sender="u1", receiver="gone", chatroom="R", createdTimestamp=1,
    ))
    populated = await store.chats.get_populated(stored.id)
    assert populated.sender.username == "alice"
    assert populated.receiver.id == "gone"
    assert populated.receiver.username == ""


# =============================================================================
# Chatrooms
# =============================================================================


@pytest.mark.asyncio
async def test_participant_operations(store):
    await store.chatrooms.create(make_room("R", "u1", "u2"))

    await store.chatrooms.add_participant("R", ChatroomParticipant(user="u3"))
    with pytest.raises(ConflictError):
        await store.chatrooms.add_participant("R", ChatroomParticipant(user="u3"))

    await store.chatrooms.update_participant(
        "R", ChatroomParticipant(user="u3", role=ParticipantRole.ADMIN, mutedUntilTimestamp=50)
    )
    room = await store.chatrooms.get("R")
    assert room.find_participant("u3").role == ParticipantRole.ADMIN
    assert room.find_participant("u3").mutedUntilTimestamp == 50

    await store.chatrooms.remove_participant("R", "u2")
    assert (await store.chatrooms.get("R")).participant_ids() == ["u1", "u3"]

    with pytest.raises(NotFoundError):
        await store.chatrooms.update_participant("R", ChatroomParticipant(user="u2"))
    with pytest.raises(NotFoundError):
        await store.chatrooms.add_participant("missing", ChatroomParticipant(user="u2"))


@pytest.mark.asyncio
async def test_record_message_only_moves_forward(store):
    await store.chatrooms.create(make_room("R", "u1", "u2"))

    await store.chatrooms.record_message("R", chat("R", "u1", 200, text="newer"))
    await store.chatrooms.record_message("R", chat("R", "u2", 100, text="older"))

    room = await store.chatrooms.get("R")
    assert room.messagesCount == 2
    assert room.lastMessage == "newer"
    assert room.lastSender == "u1"
    assert room.lastMessageTimestamp == 200


@pytest.mark.asyncio
async def test_messages_count_never_negative(store):
    await store.chatrooms.create(make_room("R", "u1"))
    await store.chatrooms.adjust_messages_count("R", -1)
    assert (await store.chatrooms.get("R")).messagesCount == 0


@pytest.mark.asyncio
async def test_chatroom_update_ignores_summary_fields(store):
    await store.chatrooms.create(make_room("R", "u1"))
    room = await store.chatrooms.get("R")
    room.name = "renamed"
    room.type = ChatroomType.PUBLIC
    room.messagesCount = 42
    room.participants = []
    await store.chatrooms.update(room)

    stored = await store.chatrooms.get("R")
    assert stored.name == "renamed"
    assert stored.type == ChatroomType.PUBLIC
    assert stored.messagesCount == 0
    assert stored.participant_ids() == ["u1"]


@pytest.mark.asyncio
async def test_chatroom_filters_and_population(store):
    await store.users.create(User(id="u1", userId="ext-1", username="alice"))
    await store.chatrooms.create(make_room("R", "u1", "u2"))
    await store.chatrooms.create(make_room("D", "u1", "u3", is_group=False))

    rooms, total = await store.chatrooms.get_all_populated(
        ChatroomFilter(participantId="u1", isGroup=False), Pagination()
    )
    assert total == 1
    assert rooms[0].id == "D"
    assert rooms[0].participants[0].user.username == "alice"
    assert rooms[0].participants[1].user.id == "u3"

    rooms, _ = await store.chatrooms.get_all(ChatroomFilter(participantId="u2"), Pagination())
    assert [r.id for r in rooms] == ["R"]
