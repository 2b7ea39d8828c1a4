"""Service container.

One ``Services`` instance is built per application in the lifespan and
stored on ``app.state.services``; routers reach it through ``get_services``.
"""
from dataclasses import dataclass

import httpx
from starlette.requests import HTTPConnection

from app.auth.service import AuthBridge
from app.chat.hub import Hub
from app.chat.service import ChatService
from app.chatrooms.service import ChatroomService
from app.clients.service import ClientService
from app.config import AppSettings
from app.kv.base import KVStore
from app.store.base import DocumentStore
from app.users.service import UserService


@dataclass
class Services:
    settings: AppSettings
    store: DocumentStore
    kv: KVStore
    http: httpx.AsyncClient
    clients: ClientService
    auth: AuthBridge
    users: UserService
    chatrooms: ChatroomService
    chat: ChatService
    hub: Hub


def build_services(
    settings: AppSettings,
    store: DocumentStore,
    kv: KVStore,
    http_client: httpx.AsyncClient,
) -> Services:
    chatrooms = ChatroomService(store.chatrooms, store.chats, store.users)
    ws = settings.websocket
    return Services(
        settings=settings,
        store=store,
        kv=kv,
        http=http_client,
        clients=ClientService(store.clients, kv, settings.auth.client_cache_ttl_seconds),
        auth=AuthBridge(
            store.clients,
            store.users,
            kv,
            http_client,
            token_ttl=settings.auth.token_cache_ttl_seconds,
            request_timeout=settings.auth.request_timeout_seconds,
            error_body_limit=settings.auth.error_body_limit,
        ),
        users=UserService(store.users, kv, settings.auth.token_cache_ttl_seconds),
        chatrooms=chatrooms,
        chat=ChatService(store.chats, store.chatrooms, chatrooms),
        hub=Hub(
            kv,
            send_queue_size=ws.send_queue_size,
            presence_ttl=ws.presence_ttl_seconds,
            relay_channel=ws.relay_channel if ws.relay_enabled else None,
        ),
    )


def get_services(conn: HTTPConnection) -> Services:
    return conn.app.state.services
