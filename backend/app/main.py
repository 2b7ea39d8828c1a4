"""Chat Backend Application.

Real-time chat core: authenticated WebSocket fan-out with presence in a
shared KV store, plus the HTTP API for clients, users, chatrooms and chats.

Modules:
    - chat: WebSocket hub, socket handler, message service and endpoints
    - chatrooms: rooms, participants, role hierarchy, mutes
    - clients: tenant registry and client-key validation
    - auth: bearer-token bridge to each client's auth endpoint
    - users: users mirrored from client identity providers
    - store: document store (MongoDB or in-memory)
    - kv: shared KV store (Redis or in-memory)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.chat.router import router as chat_router
from app.chat.ws import router as ws_router
from app.chatrooms.router import router as chatrooms_router
from app.clients.router import router as clients_router
from app.common.errors import register_error_handlers
from app.config import AppSettings, get_config
from app.kv import create_kv
from app.kv.base import KVStore
from app.services import build_services
from app.store import create_store
from app.store.base import DocumentStore
from app.users.router import router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request to the auth endpoints, pymongo every
# heartbeat; none of it helps when debugging chat logic.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "pymongo",
    "motor",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[AppSettings] = None,
    store: Optional[DocumentStore] = None,
    kv: Optional[KVStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Configuration; defaults to ``get_config()``.
        store: Document store; defaults to the configured back-end.
        kv: KV store; defaults to the configured back-end.
        http_client: Client used for auth endpoint calls (tests inject a
            mock transport here).

    Returns:
        The FastAPI application. Backends connect in its lifespan.
    """
    settings = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in chat.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, settings.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", settings.logging.level.upper())

        doc_store = store or create_store(settings)
        kv_store = kv or create_kv(settings)
        http = http_client or httpx.AsyncClient()

        await doc_store.connect()
        await kv_store.connect()

        services = build_services(settings, doc_store, kv_store, http)
        app.state.services = services
        await services.hub.start()
        logger.info(
            "Chat backend ready (database=%s, kv=%s)",
            settings.database.backend,
            settings.kv.backend,
        )

        yield  # Application runs here

        # Shutdown: refuse new upgrades, close every outbound queue, then
        # give connection handlers a bounded window to unwind.
        await services.hub.stop()
        await _drain_connections(settings.websocket.shutdown_timeout_seconds)

        if http_client is None:
            await http.aclose()
        await kv_store.close()
        await doc_store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Chat API",
        description="Real-time chat core: WebSocket hub, chatrooms and messages",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    prefix = settings.server.api_prefix
    app.include_router(ws_router, prefix=prefix)
    app.include_router(clients_router, prefix=prefix)
    app.include_router(users_router, prefix=prefix)
    app.include_router(chatrooms_router, prefix=prefix)
    app.include_router(chat_router, prefix=prefix)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


async def _drain_connections(timeout: float) -> None:
    """Wait for socket handler tasks to finish after the hub has stopped."""
    current = asyncio.current_task()
    pending = [
        task for task in asyncio.all_tasks()
        if task is not current and task.get_name().startswith("ws-write-")
    ]
    if not pending:
        return
    done, still_running = await asyncio.wait(pending, timeout=timeout)
    if still_running:
        logger.warning("%d connection(s) did not close within %.0fs", len(still_running), timeout)


app = create_app()
