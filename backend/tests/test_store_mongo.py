"""Tests for the MongoDB document store against mocked motor collections.

The driver is never contacted: each ``_Collection`` wraps a ``MagicMock``
whose coroutine methods are ``AsyncMock``s, so the tests assert the exact
query and update documents and the driver error translation.
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from app.chat.schemas import Chat, ChatFilter
from app.chatrooms.schemas import ChatroomParticipant, ParticipantRole
from app.common.errors import ConflictError, NotFoundError, TransientError
from app.common.schemas import Pagination
from app.store.mongo import (
    NEWEST_FIRST,
    MongoChatRepository,
    MongoChatroomRepository,
    MongoDocumentStore,
    MongoUserRepository,
    _Collection,
)
from app.users.schemas import User

ROOM_ID = str(ObjectId())


def raw_collection() -> MagicMock:
    raw = MagicMock()
    for name in (
        "find_one", "insert_one", "replace_one", "delete_one", "delete_many",
        "update_one", "find_one_and_update", "count_documents", "create_index",
    ):
        setattr(raw, name, AsyncMock())
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[])
    raw.find.return_value = cursor
    return raw


def matched(*counts):
    return [SimpleNamespace(matched_count=n) for n in counts]


@pytest.fixture
def users_raw():
    return raw_collection()


@pytest.fixture
def rooms_raw():
    return raw_collection()


@pytest.fixture
def users(users_raw):
    return MongoUserRepository(_Collection(users_raw, "User", timeout=1.0))


@pytest.fixture
def rooms(rooms_raw, users):
    return MongoChatroomRepository(_Collection(rooms_raw, "Chatroom", timeout=1.0), users)


# =============================================================================
# Error translation
# =============================================================================


class TestCollectionRun:
    @pytest.mark.asyncio
    async def test_duplicate_key_is_conflict(self, users_raw, users):
        users_raw.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        with pytest.raises(ConflictError) as exc:
            await users.create(User(userId="ext-1", username="alice"))
        assert exc.value.message == "User already exists"

    @pytest.mark.asyncio
    async def test_driver_error_is_transient(self, users_raw, users):
        users_raw.find_one.side_effect = ServerSelectionTimeoutError("no servers")
        with pytest.raises(TransientError):
            await users.get(str(ObjectId()))

    @pytest.mark.asyncio
    async def test_deadline_is_transient(self):
        async def hang():
            await asyncio.sleep(10)

        coll = _Collection(raw_collection(), "Chat", timeout=0.01)
        with pytest.raises(TransientError) as exc:
            await coll.run(hang())
        assert exc.value.message == "Chat store timed out"


# =============================================================================
# Users
# =============================================================================


class TestUsers:
    @pytest.mark.asyncio
    async def test_invalid_id_is_not_found_without_a_query(self, users_raw, users):
        with pytest.raises(NotFoundError):
            await users.get("not-an-object-id")
        users_raw.find_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_maps_object_id(self, users_raw, users):
        oid = ObjectId()
        users_raw.find_one.return_value = {"_id": oid, "userId": "ext-1", "username": "alice"}

        user = await users.get(str(oid))

        users_raw.find_one.assert_awaited_once_with({"_id": oid})
        assert user.id == str(oid)
        assert user.username == "alice"

    @pytest.mark.asyncio
    async def test_missing_document_is_not_found(self, users_raw, users):
        users_raw.find_one.return_value = None
        with pytest.raises(NotFoundError):
            await users.get_by_external_id("ext-404")
        users_raw.find_one.assert_awaited_once_with({"userId": "ext-404"})

    @pytest.mark.asyncio
    async def test_create_returns_inserted_id(self, users_raw, users):
        oid = ObjectId()
        users_raw.insert_one.return_value = SimpleNamespace(inserted_id=oid)

        user = await users.create(User(userId="ext-1", username="alice"))

        assert user.id == str(oid)
        doc = users_raw.insert_one.await_args.args[0]
        assert "_id" not in doc
        assert "id" not in doc
        assert doc["username"] == "alice"

    @pytest.mark.asyncio
    async def test_update_of_missing_user_is_not_found(self, users_raw, users):
        users_raw.replace_one.return_value = SimpleNamespace(matched_count=0)
        oid = ObjectId()
        with pytest.raises(NotFoundError):
            await users.update(User(id=str(oid), userId="ext-1", username="alice"))
        query, doc = users_raw.replace_one.await_args.args
        assert query == {"_id": oid}
        assert doc["_id"] == oid

    @pytest.mark.asyncio
    async def test_get_many_skips_invalid_ids(self, users_raw, users):
        oid = ObjectId()
        users_raw.find.return_value.to_list.return_value = [{"_id": oid, "username": "alice"}]

        found = await users.get_many([str(oid), "junk", ""])

        users_raw.find.assert_called_once_with({"_id": {"$in": [oid]}})
        assert list(found) == [str(oid)]

    @pytest.mark.asyncio
    async def test_get_many_with_no_valid_ids_skips_the_query(self, users_raw, users):
        assert await users.get_many(["junk"]) == {}
        users_raw.find.assert_not_called()


# =============================================================================
# Chats
# =============================================================================


class TestChats:
    @pytest.mark.asyncio
    async def test_filter_and_page(self, users):
        raw = raw_collection()
        raw.count_documents.return_value = 7
        chats = MongoChatRepository(_Collection(raw, "Chat", timeout=1.0), users)

        _, total = await chats.get_all(
            ChatFilter(chatroomId=ROOM_ID, senderId="u1", startTime=10, endTime=20),
            Pagination(page=2, limit=5),
        )

        query = {"chatroom": ROOM_ID, "sender": "u1", "createdTimestamp": {"$gte": 10, "$lte": 20}}
        raw.find.assert_called_once_with(query)
        cursor = raw.find.return_value
        cursor.sort.assert_called_once_with(NEWEST_FIRST)
        cursor.skip.assert_called_once_with(5)
        cursor.limit.assert_called_once_with(5)
        raw.count_documents.assert_awaited_once_with(query)
        assert total == 7

    @pytest.mark.asyncio
    async def test_update_sets_mutable_fields_only(self, users):
        raw = raw_collection()
        raw.find_one_and_update.return_value = None
        chats = MongoChatRepository(_Collection(raw, "Chat", timeout=1.0), users)
        oid = ObjectId()

        with pytest.raises(NotFoundError):
            await chats.update(Chat(id=str(oid), message="edited", sender="u1", chatroom=ROOM_ID))

        query, update = raw.find_one_and_update.await_args.args
        assert query == {"_id": oid}
        assert update == {"$set": {"message": "edited", "premium": None}}


# =============================================================================
# Chatrooms
# =============================================================================


class TestChatrooms:
    @pytest.mark.asyncio
    async def test_add_participant_pushes_when_absent(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(1)
        participant = ChatroomParticipant(user="u2", role=ParticipantRole.MEMBER, joinedTimestamp=5)

        await rooms.add_participant(ROOM_ID, participant)

        query, update = rooms_raw.update_one.await_args.args
        assert query == {"_id": ObjectId(ROOM_ID), "participants.user": {"$ne": "u2"}}
        assert update == {"$push": {"participants": participant.model_dump(mode="json")}}

    @pytest.mark.asyncio
    async def test_add_existing_participant_is_conflict(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0)
        rooms_raw.find_one.return_value = {"_id": ObjectId(ROOM_ID)}

        with pytest.raises(ConflictError):
            await rooms.add_participant(ROOM_ID, ChatroomParticipant(user="u2"))

    @pytest.mark.asyncio
    async def test_add_participant_to_missing_room_is_not_found(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0)
        rooms_raw.find_one.return_value = None

        with pytest.raises(NotFoundError):
            await rooms.add_participant(ROOM_ID, ChatroomParticipant(user="u2"))

    @pytest.mark.asyncio
    async def test_update_participant_uses_positional_set(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0)
        participant = ChatroomParticipant(user="u2", role=ParticipantRole.MODERATOR)

        with pytest.raises(NotFoundError) as exc:
            await rooms.update_participant(ROOM_ID, participant)
        assert exc.value.message == "Participant not found"

        query, update = rooms_raw.update_one.await_args.args
        assert query == {"_id": ObjectId(ROOM_ID), "participants.user": "u2"}
        assert update == {"$set": {"participants.$": participant.model_dump(mode="json")}}

    @pytest.mark.asyncio
    async def test_record_message_advances_summary(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(1)
        chat = Chat(message="hello", sender="u1", chatroom=ROOM_ID, createdTimestamp=100)

        await rooms.record_message(ROOM_ID, chat)

        assert rooms_raw.update_one.await_count == 1
        query, update = rooms_raw.update_one.await_args.args
        assert query["_id"] == ObjectId(ROOM_ID)
        assert {"lastMessageTimestamp": {"$lte": 100}} in query["$or"]
        assert update == {
            "$inc": {"messagesCount": 1},
            "$set": {"lastMessage": "hello", "lastSender": "u1", "lastMessageTimestamp": 100},
        }

    @pytest.mark.asyncio
    async def test_older_message_only_counts(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0, 1)
        chat = Chat(message="late", sender="u1", chatroom=ROOM_ID, createdTimestamp=50)

        await rooms.record_message(ROOM_ID, chat)

        fallback = rooms_raw.update_one.await_args_list[1].args
        assert fallback == ({"_id": ObjectId(ROOM_ID)}, {"$inc": {"messagesCount": 1}})

    @pytest.mark.asyncio
    async def test_record_message_on_missing_room_is_not_found(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0, 0)
        with pytest.raises(NotFoundError):
            await rooms.record_message(ROOM_ID, Chat(message="x", sender="u1", chatroom=ROOM_ID))

    @pytest.mark.asyncio
    async def test_decrement_is_guarded(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(1)

        await rooms.adjust_messages_count(ROOM_ID, -1)

        query, update = rooms_raw.update_one.await_args.args
        assert query == {"_id": ObjectId(ROOM_ID), "messagesCount": {"$gte": 1}}
        assert update == {"$inc": {"messagesCount": -1}}

    @pytest.mark.asyncio
    async def test_decrement_below_zero_floors_at_zero(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0, 1)

        await rooms.adjust_messages_count(ROOM_ID, -3)

        floor = rooms_raw.update_one.await_args_list[1].args
        assert floor == ({"_id": ObjectId(ROOM_ID)}, {"$set": {"messagesCount": 0}})

    @pytest.mark.asyncio
    async def test_increment_of_missing_room_is_not_found(self, rooms_raw, rooms):
        rooms_raw.update_one.side_effect = matched(0)
        with pytest.raises(NotFoundError):
            await rooms.adjust_messages_count(ROOM_ID, 1)
        assert rooms_raw.update_one.await_count == 1


# =============================================================================
# Store
# =============================================================================


@pytest.mark.asyncio
async def test_ensure_indexes():
    store = MongoDocumentStore("mongodb://localhost:27017", "chat_test", timeout_seconds=1.0)
    for coll in (store._users, store._clients, store._chats, store._chatrooms):
        coll.raw = raw_collection()
    try:
        await store.ensure_indexes()
    finally:
        await store.close()

    store._users.raw.create_index.assert_any_await(
        "username", unique=True, partialFilterExpression={"username": {"$gt": ""}}
    )
    store._clients.raw.create_index.assert_any_await("clientKey", unique=True)
    assert store._chats.raw.create_index.await_count == 3
    store._chatrooms.raw.create_index.assert_any_await([("participants.user", 1), ("createdTimestamp", -1)])
