"""History Store - optional chat history persistence.

When a user has opted in to saving chat history, the orchestrator records:
- one chat_sessions row per session (completed with its final duration)
- one chat_messages row per transcript message
- emotion_metrics rows for debounced emotion snapshots

SessionStore is the seam; InMemorySessionStore backs tests and local
development, SupabaseSessionStore talks to PostgREST over httpx.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from talkai.config.settings import Settings, get_settings
from talkai.exceptions import PersistenceError
from talkai.observability.logging import get_logger
from talkai.voice.messages import EmotionScore, TranscriptMessage

logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore(Protocol):
    """Protocol for chat history backends.

    Implementations raise PersistenceError on failure; callers decide
    whether a failure matters.
    """

    async def get_history_preference(self, user_id: str) -> bool:
        """Whether the user opted in to saving chat history."""
        ...

    async def create_session(
        self,
        user_id: str,
        title: str,
        voice_config_id: str | None = None,
        avatar_id: str | None = None,
    ) -> str:
        """Create a history record; returns its id."""
        ...

    async def save_message(self, session_id: str, message: TranscriptMessage) -> None:
        ...

    async def save_emotion_metrics(
        self,
        session_id: str,
        emotions: list[EmotionScore],
    ) -> None:
        ...

    async def complete_session(self, session_id: str, duration_seconds: int) -> None:
        """Mark the record completed with its final duration."""
        ...

    async def aclose(self) -> None:
        """Release connections held by the backend."""
        ...


@dataclass
class StoredSession:
    """History record held by InMemorySessionStore."""

    id: str
    user_id: str
    title: str
    status: str = "active"
    voice_config_id: str | None = None
    avatar_id: str | None = None
    duration_seconds: int | None = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    messages: list[dict[str, Any]] = field(default_factory=list)
    emotion_metrics: list[dict[str, Any]] = field(default_factory=list)


class InMemorySessionStore:
    """Process-local history store.

    Usage:
        store = InMemorySessionStore(preferences={"user-1": True})
        record_id = await store.create_session("user-1", "Avatar Session")
    """

    def __init__(self, preferences: dict[str, bool] | None = None) -> None:
        self._preferences = dict(preferences or {})
        self._sessions: dict[str, StoredSession] = {}

    def set_history_preference(self, user_id: str, enabled: bool) -> None:
        self._preferences[user_id] = enabled

    def get(self, session_id: str) -> StoredSession | None:
        return self._sessions.get(session_id)

    def _require(self, table: str, session_id: str) -> StoredSession:
        record = self._sessions.get(session_id)
        if record is None:
            raise PersistenceError(table, f"unknown session {session_id}")
        return record

    async def get_history_preference(self, user_id: str) -> bool:
        return self._preferences.get(user_id, False)

    async def create_session(
        self,
        user_id: str,
        title: str,
        voice_config_id: str | None = None,
        avatar_id: str | None = None,
    ) -> str:
        record = StoredSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            voice_config_id=voice_config_id,
            avatar_id=avatar_id,
        )
        self._sessions[record.id] = record
        return record.id

    async def save_message(self, session_id: str, message: TranscriptMessage) -> None:
        record = self._require("chat_messages", session_id)
        record.messages.append({
            "chat_session_id": session_id,
            "role": message.role,
            "content": message.content,
            "emotion_data": [e.to_dict() for e in message.emotions],
        })

    async def save_emotion_metrics(
        self,
        session_id: str,
        emotions: list[EmotionScore],
    ) -> None:
        if not emotions:
            return
        record = self._require("emotion_metrics", session_id)
        timestamp = _now_iso()
        record.emotion_metrics.extend(
            {
                "session_id": session_id,
                "emotion_type": e.name,
                "score": e.score,
                "timestamp": timestamp,
            }
            for e in emotions
        )

    async def complete_session(self, session_id: str, duration_seconds: int) -> None:
        record = self._require("chat_sessions", session_id)
        record.status = "completed"
        record.duration_seconds = duration_seconds
        record.updated_at = _now_iso()

    async def aclose(self) -> None:
        pass


class SupabaseSessionStore:
    """History store backed by Supabase (PostgREST).

    Tables: profiles, chat_sessions, chat_messages, emotion_metrics.
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_s,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise PersistenceError(table, str(e)) from e

        if not response.is_success:
            try:
                reason = response.json().get("message") or response.text
            except ValueError:
                reason = response.text
            raise PersistenceError(table, f"HTTP {response.status_code}: {reason}")

        if not response.content:
            return None
        return response.json()

    async def get_history_preference(self, user_id: str) -> bool:
        rows = await self._request(
            "GET",
            "profiles",
            params={"id": f"eq.{user_id}", "select": "save_chat_history"},
        )
        if not rows:
            return False
        return bool(rows[0].get("save_chat_history"))

    async def create_session(
        self,
        user_id: str,
        title: str,
        voice_config_id: str | None = None,
        avatar_id: str | None = None,
    ) -> str:
        rows = await self._request(
            "POST",
            "chat_sessions",
            json={
                "user_id": user_id,
                "title": title,
                "status": "active",
                "voice_config_id": voice_config_id,
                "avatar_id": avatar_id,
            },
            headers={"Prefer": "return=representation"},
        )
        if not rows or not rows[0].get("id"):
            raise PersistenceError("chat_sessions", "insert returned no id")
        return str(rows[0]["id"])

    async def save_message(self, session_id: str, message: TranscriptMessage) -> None:
        await self._request(
            "POST",
            "chat_messages",
            json={
                "chat_session_id": session_id,
                "role": message.role,
                "content": message.content,
                "emotion_data": [e.to_dict() for e in message.emotions],
            },
        )

    async def save_emotion_metrics(
        self,
        session_id: str,
        emotions: list[EmotionScore],
    ) -> None:
        if not emotions:
            return
        timestamp = _now_iso()
        await self._request(
            "POST",
            "emotion_metrics",
            json=[
                {
                    "session_id": session_id,
                    "emotion_type": e.name,
                    "score": e.score,
                    "timestamp": timestamp,
                }
                for e in emotions
            ],
        )

    async def complete_session(self, session_id: str, duration_seconds: int) -> None:
        await self._request(
            "PATCH",
            "chat_sessions",
            params={"id": f"eq.{session_id}"},
            json={
                "status": "completed",
                "duration_seconds": duration_seconds,
                "updated_at": _now_iso(),
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def create_session_store(settings: Settings | None = None) -> SessionStore:
    """Supabase store when configured, else in-memory."""
    settings = settings or get_settings()
    if settings.history_store_configured:
        logger.info("history_store_supabase")
        return SupabaseSessionStore(settings.supabase_url, settings.supabase_key)
    logger.info("history_store_in_memory")
    return InMemorySessionStore()
