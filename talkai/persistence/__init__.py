"""Persistence module - optional chat history storage."""

from talkai.persistence.store import (
    InMemorySessionStore,
    SessionStore,
    StoredSession,
    SupabaseSessionStore,
    create_session_store,
)

__all__ = [
    "InMemorySessionStore",
    "SessionStore",
    "StoredSession",
    "SupabaseSessionStore",
    "create_session_store",
]
