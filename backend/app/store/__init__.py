"""Persistent storage for users, clients, chatrooms and chats."""
from app.store.base import DocumentStore


def create_store(settings) -> DocumentStore:
    """Build the document store selected by ``database.backend``.

    The MongoDB back-end is imported lazily so the memory back-end runs
    without a reachable database.
    """
    backend = settings.database.backend
    if backend == "memory":
        from app.store.memory import MemoryDocumentStore
        return MemoryDocumentStore()
    if backend == "mongo":
        from app.store.mongo import MongoDocumentStore
        return MongoDocumentStore(
            url=settings.secrets.mongodb.url,
            database=settings.database.name,
            timeout_seconds=settings.database.timeout_seconds,
        )
    raise ValueError(f"Unknown database backend: {backend}")
