"""MongoDB document store (motor).

Collections: ``users``, ``clients``, ``chats``, ``chatrooms``. Documents use
an ``ObjectId`` ``_id``; references between documents (participants, sender,
chatroom) are stored as the referenced id's hex string.

Every driver call is bounded by ``timeout_seconds``. Driver failures are
translated into the service error hierarchy:

    DuplicateKeyError           -> ConflictError
    PyMongoError / timeout      -> TransientError
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.chat.schemas import Chat, ChatFilter
from app.chatrooms.schemas import Chatroom, ChatroomFilter, ChatroomParticipant
from app.clients.schemas import Client
from app.common.errors import ConflictError, NotFoundError, TransientError
from app.common.schemas import Pagination
from app.store.base import (
    ChatRepository,
    ChatroomRepository,
    ClientRepository,
    DocumentStore,
    UserRepository,
)
from app.users.schemas import User

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("createdTimestamp", DESCENDING), ("_id", DESCENDING)]


def _oid(value: Optional[str], entity: str) -> ObjectId:
    # An id that cannot be an ObjectId cannot match any document.
    if not value or not ObjectId.is_valid(value):
        raise NotFoundError(entity)
    return ObjectId(value)


def _to_doc(model) -> Dict[str, Any]:
    doc = model.model_dump(mode="json", exclude={"id"})
    if model.id and ObjectId.is_valid(model.id):
        doc["_id"] = ObjectId(model.id)
    return doc


def _from_doc(cls, doc: Dict[str, Any]):
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return cls.model_validate(doc)


def _time_window(query: Dict[str, Any], start: Optional[int], end: Optional[int]) -> None:
    window: Dict[str, int] = {}
    if start is not None:
        window["$gte"] = start
    if end is not None:
        window["$lte"] = end
    if window:
        query["createdTimestamp"] = window


class _Collection:
    """A motor collection plus the deadline and error translation."""

    def __init__(self, collection, entity: str, timeout: float) -> None:
        self.raw = collection
        self.entity = entity
        self.timeout = timeout

    async def run(self, awaitable: Awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except DuplicateKeyError as exc:
            raise ConflictError(f"{self.entity} already exists") from exc
        except asyncio.TimeoutError as exc:
            logger.warning(f"[Mongo] {self.entity} operation timed out after {self.timeout}s")
            raise TransientError(f"{self.entity} store timed out") from exc
        except PyMongoError as exc:
            logger.warning(f"[Mongo] {self.entity} operation failed: {exc}")
            raise TransientError(f"{self.entity} store unavailable") from exc

    async def find_one(self, query: Dict[str, Any]) -> Dict[str, Any]:
        doc = await self.run(self.raw.find_one(query))
        if doc is None:
            raise NotFoundError(self.entity)
        return doc

    async def find_page(
        self, query: Dict[str, Any], sort, pag: Pagination
    ) -> Tuple[List[Dict[str, Any]], int]:
        cursor = self.raw.find(query).sort(sort).skip(pag.skip)
        if pag.limit:
            cursor = cursor.limit(pag.limit)
        docs = await self.run(cursor.to_list(length=None))
        total = await self.run(self.raw.count_documents(query))
        return docs, total

    async def insert(self, model):
        doc = _to_doc(model)
        result = await self.run(self.raw.insert_one(doc))
        return model.model_copy(update={"id": str(result.inserted_id)})

    async def replace(self, model):
        oid = _oid(model.id, self.entity)
        result = await self.run(self.raw.replace_one({"_id": oid}, _to_doc(model)))
        if result.matched_count == 0:
            raise NotFoundError(self.entity)
        return model

    async def delete(self, value: str) -> None:
        result = await self.run(self.raw.delete_one({"_id": _oid(value, self.entity)}))
        if result.deleted_count == 0:
            raise NotFoundError(self.entity)


class MongoUserRepository(UserRepository):

    def __init__(self, coll: _Collection) -> None:
        self._coll = coll

    async def get(self, user_id: str) -> User:
        doc = await self._coll.find_one({"_id": _oid(user_id, "User")})
        return _from_doc(User, doc)

    async def get_by_external_id(self, external_id: str) -> User:
        return _from_doc(User, await self._coll.find_one({"userId": external_id}))

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        oids = [ObjectId(uid) for uid in set(user_ids) if uid and ObjectId.is_valid(uid)]
        if not oids:
            return {}
        docs = await self._coll.run(
            self._coll.raw.find({"_id": {"$in": oids}}).to_list(length=None)
        )
        users = [_from_doc(User, doc) for doc in docs]
        return {user.id: user for user in users}

    async def get_all(self, pag: Pagination) -> Tuple[List[User], int]:
        docs, total = await self._coll.find_page({}, [("_id", DESCENDING)], pag)
        return [_from_doc(User, d) for d in docs], total

    async def create(self, user: User) -> User:
        return await self._coll.insert(user)

    async def update(self, user: User) -> User:
        return await self._coll.replace(user)

    async def delete(self, user_id: str) -> None:
        await self._coll.delete(user_id)


class MongoClientRepository(ClientRepository):

    def __init__(self, coll: _Collection) -> None:
        self._coll = coll

    async def get(self, client_id: str) -> Client:
        doc = await self._coll.find_one({"_id": _oid(client_id, "Client")})
        return _from_doc(Client, doc)

    async def get_by_key(self, client_key: str) -> Client:
        return _from_doc(Client, await self._coll.find_one({"clientKey": client_key}))

    async def get_all(self, pag: Pagination) -> Tuple[List[Client], int]:
        docs, total = await self._coll.find_page({}, NEWEST_FIRST, pag)
        return [_from_doc(Client, d) for d in docs], total

    async def create(self, client: Client) -> Client:
        return await self._coll.insert(client)

    async def update(self, client: Client) -> Client:
        return await self._coll.replace(client)

    async def delete(self, client_id: str) -> None:
        await self._coll.delete(client_id)


class MongoChatRepository(ChatRepository):

    def __init__(self, coll: _Collection, users: UserRepository) -> None:
        super().__init__(users)
        self._coll = coll

    async def get(self, chat_id: str) -> Chat:
        doc = await self._coll.find_one({"_id": _oid(chat_id, "Chat")})
        return _from_doc(Chat, doc)

    async def get_all(self, filter: ChatFilter, pag: Pagination) -> Tuple[List[Chat], int]:
        query: Dict[str, Any] = {}
        if filter.chatroomId:
            query["chatroom"] = filter.chatroomId
        if filter.senderId:
            query["sender"] = filter.senderId
        if filter.receiverId:
            query["receiver"] = filter.receiverId
        _time_window(query, filter.startTime, filter.endTime)
        docs, total = await self._coll.find_page(query, NEWEST_FIRST, pag)
        return [_from_doc(Chat, d) for d in docs], total

    async def create(self, chat: Chat) -> Chat:
        return await self._coll.insert(chat)

    async def update(self, chat: Chat) -> Chat:
        doc = await self._coll.run(
            self._coll.raw.find_one_and_update(
                {"_id": _oid(chat.id, "Chat")},
                {"$set": {"message": chat.message, "premium": chat.premium}},
                return_document=ReturnDocument.AFTER,
            )
        )
        if doc is None:
            raise NotFoundError("Chat")
        return _from_doc(Chat, doc)

    async def delete(self, chat_id: str) -> None:
        await self._coll.delete(chat_id)

    async def delete_by_chatroom(self, chatroom_id: str) -> int:
        result = await self._coll.run(self._coll.raw.delete_many({"chatroom": chatroom_id}))
        return result.deleted_count


class MongoChatroomRepository(ChatroomRepository):

    def __init__(self, coll: _Collection, users: UserRepository) -> None:
        super().__init__(users)
        self._coll = coll

    async def _update(self, query: Dict[str, Any], update: Dict[str, Any]) -> int:
        result = await self._coll.run(self._coll.raw.update_one(query, update))
        return result.matched_count

    async def get(self, chatroom_id: str) -> Chatroom:
        doc = await self._coll.find_one({"_id": _oid(chatroom_id, "Chatroom")})
        return _from_doc(Chatroom, doc)

    async def get_all(
        self, filter: ChatroomFilter, pag: Pagination
    ) -> Tuple[List[Chatroom], int]:
        query: Dict[str, Any] = {}
        if filter.participantId:
            query["participants.user"] = filter.participantId
        if filter.type is not None:
            query["type"] = filter.type.value
        if filter.isGroup is not None:
            query["isGroup"] = filter.isGroup
        _time_window(query, filter.startTime, filter.endTime)
        docs, total = await self._coll.find_page(query, NEWEST_FIRST, pag)
        return [_from_doc(Chatroom, d) for d in docs], total

    async def create(self, chatroom: Chatroom) -> Chatroom:
        return await self._coll.insert(chatroom)

    async def update(self, chatroom: Chatroom) -> Chatroom:
        doc = await self._coll.run(
            self._coll.raw.find_one_and_update(
                {"_id": _oid(chatroom.id, "Chatroom")},
                {"$set": {"name": chatroom.name, "type": chatroom.type.value}},
                return_document=ReturnDocument.AFTER,
            )
        )
        if doc is None:
            raise NotFoundError("Chatroom")
        return _from_doc(Chatroom, doc)

    async def delete(self, chatroom_id: str) -> None:
        await self._coll.delete(chatroom_id)

    async def add_participant(self, chatroom_id: str, participant: ChatroomParticipant) -> None:
        oid = _oid(chatroom_id, "Chatroom")
        matched = await self._update(
            {"_id": oid, "participants.user": {"$ne": participant.user}},
            {"$push": {"participants": participant.model_dump(mode="json")}},
        )
        if matched == 0:
            # either the room is gone or the user is already in it
            await self._coll.find_one({"_id": oid})
            raise ConflictError("User is already a participant")

    async def remove_participant(self, chatroom_id: str, user_id: str) -> None:
        matched = await self._update(
            {"_id": _oid(chatroom_id, "Chatroom")},
            {"$pull": {"participants": {"user": user_id}}},
        )
        if matched == 0:
            raise NotFoundError("Chatroom")

    async def update_participant(self, chatroom_id: str, participant: ChatroomParticipant) -> None:
        matched = await self._update(
            {"_id": _oid(chatroom_id, "Chatroom"), "participants.user": participant.user},
            {"$set": {"participants.$": participant.model_dump(mode="json")}},
        )
        if matched == 0:
            raise NotFoundError("Participant")

    async def record_message(self, chatroom_id: str, chat: Chat) -> None:
        oid = _oid(chatroom_id, "Chatroom")
        # Summary advances only for messages at least as new as the current one.
        matched = await self._update(
            {
                "_id": oid,
                "$or": [
                    {"lastMessageTimestamp": None},
                    {"lastMessageTimestamp": {"$lte": chat.createdTimestamp}},
                ],
            },
            {
                "$inc": {"messagesCount": 1},
                "$set": {
                    "lastMessage": chat.message,
                    "lastSender": chat.sender,
                    "lastMessageTimestamp": chat.createdTimestamp,
                },
            },
        )
        if matched == 0:
            matched = await self._update({"_id": oid}, {"$inc": {"messagesCount": 1}})
        if matched == 0:
            raise NotFoundError("Chatroom")

    async def adjust_messages_count(self, chatroom_id: str, delta: int) -> None:
        oid = _oid(chatroom_id, "Chatroom")
        query: Dict[str, Any] = {"_id": oid}
        if delta < 0:
            query["messagesCount"] = {"$gte": -delta}
        matched = await self._update(query, {"$inc": {"messagesCount": delta}})
        if matched == 0 and delta < 0:
            matched = await self._update({"_id": oid}, {"$set": {"messagesCount": 0}})
        if matched == 0:
            raise NotFoundError("Chatroom")


class MongoDocumentStore(DocumentStore):
    """Document store over one MongoDB database."""

    def __init__(self, url: str, database: str, timeout_seconds: float = 10.0) -> None:
        self._client = AsyncIOMotorClient(
            url,
            serverSelectionTimeoutMS=int(timeout_seconds * 1000),
            tz_aware=True,
        )
        self._db = self._client[database]
        self._timeout = timeout_seconds

        def coll(name: str, entity: str) -> _Collection:
            return _Collection(self._db[name], entity, timeout_seconds)

        self._users = coll("users", "User")
        self._clients = coll("clients", "Client")
        self._chats = coll("chats", "Chat")
        self._chatrooms = coll("chatrooms", "Chatroom")

        self.users = MongoUserRepository(self._users)
        self.clients = MongoClientRepository(self._clients)
        self.chats = MongoChatRepository(self._chats, self.users)
        self.chatrooms = MongoChatroomRepository(self._chatrooms, self.users)

    async def connect(self) -> None:
        try:
            await asyncio.wait_for(self._client.admin.command("ping"), timeout=self._timeout)
        except (asyncio.TimeoutError, PyMongoError) as exc:
            raise TransientError("MongoDB unreachable") from exc
        await self.ensure_indexes()
        logger.info(f"[Mongo] Connected to database '{self._db.name}'")

    async def ensure_indexes(self) -> None:
        for field in ("userId", "username"):
            # placeholder users carry empty strings; only real values must be unique
            await self._users.run(self._users.raw.create_index(
                field, unique=True, partialFilterExpression={field: {"$gt": ""}}
            ))

        await self._clients.run(self._clients.raw.create_index("clientKey", unique=True))
        await self._clients.run(self._clients.raw.create_index("name"))

        for field in ("chatroom", "sender", "receiver"):
            await self._chats.run(
                self._chats.raw.create_index([(field, ASCENDING), ("createdTimestamp", DESCENDING)])
            )

        for field in ("participants.user", "type"):
            await self._chatrooms.run(
                self._chatrooms.raw.create_index([(field, ASCENDING), ("createdTimestamp", DESCENDING)])
            )

    async def close(self) -> None:
        self._client.close()
