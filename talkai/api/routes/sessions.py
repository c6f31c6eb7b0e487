"""Session API Routes - orchestrated voice + avatar sessions.

- Create (and initialize) a session
- Inspect status, duration, flags and transcript size
- Mute, pause, forward captured audio
- End a session
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from talkai.config.settings import get_settings
from talkai.exceptions import SessionError
from talkai.observability.logging import get_logger
from talkai.orchestrator.session import SessionManager, SessionOrchestrator
from talkai.persistence.store import create_session_store

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

# Global manager (initialized on startup)
_session_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    """Get global session manager."""
    global _session_manager
    if _session_manager is None:
        settings = get_settings()
        _session_manager = SessionManager(
            max_sessions=settings.max_concurrent_sessions,
            store=create_session_store(settings),
        )
    return _session_manager


def reset_session_manager() -> None:
    """Drop the global manager; the next request builds a fresh one."""
    global _session_manager
    _session_manager = None


# Request/Response models
class CreateSessionRequest(BaseModel):
    """Request to create a new session."""

    user_id: str | None = Field(
        None,
        description="User whose history preference applies",
    )
    session_id: str | None = Field(
        None,
        description="Optional session ID (generated if not provided)",
    )


class SessionStatusResponse(BaseModel):
    """Session status response."""

    session_id: str
    status: str
    duration_seconds: int
    is_muted: bool
    is_paused: bool
    show_fallback: bool
    error: str | None
    transcript_length: int
    avatar_session_id: str | None
    voice_state: str
    avatar_state: str
    history_enabled: bool


class MuteResponse(BaseModel):
    session_id: str
    is_muted: bool


class PauseResponse(BaseModel):
    session_id: str
    is_paused: bool


def _status_response(session: SessionOrchestrator) -> SessionStatusResponse:
    record = session.snapshot()
    return SessionStatusResponse(
        session_id=record.session_id,
        status=record.status,
        duration_seconds=record.duration_seconds,
        is_muted=record.is_muted,
        is_paused=record.is_paused,
        show_fallback=record.show_fallback,
        error=record.error,
        transcript_length=record.transcript_length,
        avatar_session_id=record.avatar_session_id,
        voice_state=record.voice_state,
        avatar_state=record.avatar_state,
        history_enabled=record.history_enabled,
    )


def _require_session(manager: SessionManager, session_id: str) -> SessionOrchestrator:
    session = manager.get_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=404,
            detail=f"Session {session_id} not found",
        )
    return session


# Endpoints
@router.post("", response_model=SessionStatusResponse)
async def create_session(
    request: CreateSessionRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionStatusResponse:
    """Create and initialize a session.

    The avatar failing to connect still returns the session (status
    ``degraded``); a voice failure ends it and returns 502.
    """
    if manager.available_slots <= 0:
        raise HTTPException(
            status_code=503,
            detail="No session slots available",
        )

    session = await manager.create_session(
        user_id=request.user_id,
        session_id=request.session_id,
    )
    if session is None:
        raise HTTPException(
            status_code=503,
            detail="Failed to create session",
        )

    try:
        await session.initialize()
    except SessionError as e:
        logger.warning("session_initialize_failed", session_id=session.session_id, error=str(e))
        await manager.end_session(session.session_id, reason="error")
        raise HTTPException(status_code=502, detail=e.message)

    return _status_response(session)


@router.get("")
async def list_sessions(manager: SessionManager = Depends(get_session_manager)) -> dict:
    """List all active sessions."""
    return {
        "active_count": manager.active_count,
        "available_slots": manager.available_slots,
        "sessions": manager.list_sessions(),
    }


@router.get("/{session_id}", response_model=SessionStatusResponse)
async def get_session_status(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionStatusResponse:
    """Get status of a session."""
    return _status_response(_require_session(manager, session_id))


@router.post("/{session_id}/mute", response_model=MuteResponse)
async def toggle_mute(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> MuteResponse:
    """Toggle microphone mute (voice stream only)."""
    session = _require_session(manager, session_id)
    return MuteResponse(session_id=session_id, is_muted=session.toggle_mute())


@router.post("/{session_id}/pause", response_model=PauseResponse)
async def toggle_pause(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> PauseResponse:
    """Toggle avatar pause and the session timer."""
    session = _require_session(manager, session_id)
    return PauseResponse(session_id=session_id, is_paused=await session.toggle_pause())


@router.post("/{session_id}/audio")
async def push_audio(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    """Forward raw captured PCM to the voice stream."""
    session = _require_session(manager, session_id)
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty audio body")
    sent = await session.push_audio(body)
    return {"session_id": session_id, "sent": sent, "bytes": len(body)}


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    """End and delete a session."""
    session = _require_session(manager, session_id)
    await manager.end_session(session_id, reason="user")
    return {
        "message": f"Session {session_id} ended",
        "duration_seconds": session.duration_seconds,
    }
