"""Session Orchestrator - coordinates the voice and avatar streams.

One orchestrator per user session:
- Fetches the voice access token and connects the voice stream (fatal on failure)
- Connects the avatar stream (failure degrades to voice-only)
- Relays assistant audio to the avatar for lip-sync
- Maps throttled emotion updates to avatar expressions
- Keeps the transcript and, when the user opted in, persists history
- Owns the session timer, pause/mute controls and teardown
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from talkai.avatar.client import HeyGenClient, HeyGenConfig
from talkai.avatar.expression import ExpressionCommand, map_emotion_to_expression
from talkai.config.constants import RT
from talkai.config.settings import Settings, get_settings
from talkai.exceptions import SessionError, SessionStateError, TalkAIError
from talkai.observability.logging import SessionLogger, get_logger
from talkai.observability.metrics import (
    record_degraded,
    record_error,
    record_session_end,
    record_session_start,
)
from talkai.orchestrator.state_machine import (
    AvatarLinkState,
    LinkStateMachine,
    SessionStatus,
    StateTransition,
    VoiceState,
    compose_status,
    create_avatar_state_machine,
    create_voice_state_machine,
)
from talkai.orchestrator.timer import SessionTimer
from talkai.persistence.store import SessionStore
from talkai.utils.callbacks import Callback, invoke_callback
from talkai.utils.throttle import Debouncer, Throttle
from talkai.voice.hume import HumeClient, HumeConfig
from talkai.voice.messages import EmotionScore, TranscriptMessage
from talkai.voice.token import fetch_access_token_from_settings

logger = get_logger(__name__)

TokenFetcher = Callable[[], Awaitable[str]]
VoiceClientFactory = Callable[..., HumeClient]
AvatarClientFactory = Callable[..., HeyGenClient]


@dataclass
class SessionRecord:
    """Serializable view of an orchestrated session."""

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
    started_at: str | None = None
    current_emotions: list[dict[str, Any]] = field(default_factory=list)
    current_expression: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "duration_seconds": self.duration_seconds,
            "is_muted": self.is_muted,
            "is_paused": self.is_paused,
            "show_fallback": self.show_fallback,
            "error": self.error,
            "transcript_length": self.transcript_length,
            "avatar_session_id": self.avatar_session_id,
            "voice_state": self.voice_state,
            "avatar_state": self.avatar_state,
            "history_enabled": self.history_enabled,
            "started_at": self.started_at,
            "current_emotions": self.current_emotions,
            "current_expression": self.current_expression,
        }


class SessionOrchestrator:
    """Voice + avatar session coordinator.

    Usage:
        orchestrator = SessionOrchestrator(user_id="user-1", store=store)
        await orchestrator.initialize()

        await orchestrator.push_audio(pcm)
        orchestrator.toggle_mute()
        await orchestrator.toggle_pause()

        await orchestrator.end()
    """

    def __init__(
        self,
        session_id: str | None = None,
        user_id: str | None = None,
        *,
        settings: Settings | None = None,
        store: SessionStore | None = None,
        token_fetcher: TokenFetcher | None = None,
        voice_factory: VoiceClientFactory | None = None,
        avatar_factory: AvatarClientFactory | None = None,
        on_status_change: Callback | None = None,
        on_video_ready: Callback | None = None,
        timer: SessionTimer | None = None,
    ) -> None:
        self._session_id = session_id or str(uuid.uuid4())
        self._user_id = user_id
        self._settings = settings or get_settings()
        self._store = store
        self._token_fetcher = token_fetcher or (
            lambda: fetch_access_token_from_settings(self._settings)
        )
        self._voice_factory = voice_factory or HumeClient
        self._avatar_factory = avatar_factory or self._default_avatar_factory
        self._on_status_change = on_status_change
        self._on_video_ready = on_video_ready

        self._logger = SessionLogger(self._session_id)

        self._voice_fsm: LinkStateMachine[VoiceState] = create_voice_state_machine(self._session_id)
        self._avatar_fsm: LinkStateMachine[AvatarLinkState] = create_avatar_state_machine(self._session_id)
        self._voice_fsm.on_state_change(self._on_link_change)
        self._avatar_fsm.on_state_change(self._on_link_change)
        self._status = SessionStatus.INITIALIZING

        self._voice: HumeClient | None = None
        self._avatar: HeyGenClient | None = None
        self._avatar_session_id: str | None = None
        self._video_track: Any = None

        self._timer = timer or SessionTimer()
        self._started_at: datetime | None = None

        self._initialized = False
        self._ended = False
        self._muted = False
        self._paused = False
        self._show_fallback = False
        self._voice_stalled = False
        self._voice_lost = False
        self._error: str | None = None

        self._transcript: list[TranscriptMessage] = []
        self._current_emotions: list[EmotionScore] = []
        self._current_expression: ExpressionCommand | None = None
        self._emotion_throttle = Throttle(RT.EMOTION_THROTTLE_MS)
        self._emotion_persist = Debouncer(
            self._persist_emotions,
            RT.EMOTION_PERSIST_DEBOUNCE_MS,
            name="save_emotion_metrics",
        )

        self._history_enabled = False
        self._history_id: str | None = None

        self._relay_tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def voice_state(self) -> VoiceState:
        return self._voice_fsm.state

    @property
    def avatar_state(self) -> AvatarLinkState:
        return self._avatar_fsm.state

    @property
    def avatar_session_id(self) -> str | None:
        """Remote avatar session id, once allocated."""
        if self._avatar is not None and self._avatar.session_id:
            self._avatar_session_id = self._avatar.session_id
        return self._avatar_session_id

    @property
    def duration_seconds(self) -> int:
        return self._timer.duration_seconds

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_ended(self) -> bool:
        return self._ended

    @property
    def show_fallback(self) -> bool:
        """Whether the UI should fall back to voice-only presentation."""
        return self._show_fallback

    @property
    def error(self) -> str | None:
        """User-visible error text."""
        return self._error

    @property
    def transcript(self) -> list[TranscriptMessage]:
        return list(self._transcript)

    @property
    def current_emotions(self) -> list[EmotionScore]:
        return list(self._current_emotions)

    @property
    def current_expression(self) -> ExpressionCommand | None:
        return self._current_expression

    @property
    def history_enabled(self) -> bool:
        return self._history_enabled

    @property
    def history_id(self) -> str | None:
        return self._history_id

    @property
    def video_track(self) -> Any:
        return self._video_track

    def snapshot(self) -> SessionRecord:
        """Current session view."""
        expression = self._current_expression
        return SessionRecord(
            session_id=self._session_id,
            status=self._status.value,
            duration_seconds=self.duration_seconds,
            is_muted=self._muted,
            is_paused=self._paused,
            show_fallback=self._show_fallback,
            error=self._error,
            transcript_length=len(self._transcript),
            avatar_session_id=self.avatar_session_id,
            voice_state=self._voice_fsm.state.value,
            avatar_state=self._avatar_fsm.state.value,
            history_enabled=self._history_enabled,
            started_at=self._started_at.isoformat() if self._started_at else None,
            current_emotions=[e.to_dict() for e in self._current_emotions],
            current_expression=(
                {
                    "emotion": expression.emotion,
                    "intensity": expression.intensity,
                    "duration_ms": expression.duration_ms,
                }
                if expression
                else None
            ),
        )

    # -------------------------------------------------------------------------
    # Status composition
    # -------------------------------------------------------------------------

    async def _on_link_change(self, transition: StateTransition) -> None:
        await self._refresh_status(transition.reason)

    async def _refresh_status(self, reason: str) -> None:
        new_status = compose_status(
            self._voice_fsm.state,
            self._avatar_fsm.state,
            self._ended,
            was_live=self._timer.started,
        )
        if new_status is self._status:
            return
        old_status, self._status = self._status, new_status
        self._logger.status_change(old_status.value, new_status.value, reason)
        await invoke_callback(self._on_status_change, new_status, name="on_status_change")

    async def _voice_transition(self, state: VoiceState, reason: str) -> None:
        if self._voice_fsm.can_transition(state):
            await self._voice_fsm.transition_to(state, reason)

    async def _avatar_transition(self, state: AvatarLinkState, reason: str) -> None:
        if self._avatar_fsm.can_transition(state):
            await self._avatar_fsm.transition_to(state, reason)

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def _default_avatar_factory(self, **callbacks: Any) -> HeyGenClient:
        return HeyGenClient(
            HeyGenConfig.from_settings(self._settings),
            session_label=self._session_id,
            **callbacks,
        )

    async def initialize(self) -> SessionStatus:
        """Bring up both streams.

        Returns:
            Resulting status (LIVE, or DEGRADED if the avatar failed)

        Raises:
            SessionError: Credential fetch or voice connection failed
            SessionStateError: Already initialized or ended
        """
        if self._initialized or self._ended:
            raise SessionStateError(
                "Session already initialized",
                session_id=self._session_id,
                current_state=self._status.value,
            )
        self._initialized = True
        self._error = None

        await self._load_history_preference()

        # Voice: credential then connection, both fatal
        await self._voice_transition(VoiceState.CONNECTING, "initialize")

        try:
            token = await self._token_fetcher()
        except Exception as e:
            if self._ended:
                return self._status
            await self._fail("credential", e)

        if self._ended:
            return self._status

        self._voice = self._voice_factory(
            HumeConfig.from_settings(token, self._settings),
            on_message=self.on_voice_message,
            on_emotion=self.on_emotion_update,
            on_audio=self.on_voice_audio,
            on_error=self._on_voice_error,
            on_connect=self._on_voice_connect,
            on_disconnect=self._on_voice_disconnect,
            session_label=self._session_id,
        )

        try:
            await self._voice.connect()
        except Exception as e:
            if self._ended:
                return self._status
            await self._fail("voice_connect", e)

        if self._ended:
            return self._status

        # Avatar: failure degrades to voice-only
        await self._connect_avatar()

        if self._history_enabled and not self._ended:
            await self._create_history_record()

        logger.info(
            "session_initialized",
            session_id=self._session_id,
            status=self._status.value,
        )
        return self._status

    async def _load_history_preference(self) -> None:
        if self._store is None or not self._user_id:
            return
        try:
            self._history_enabled = await self._store.get_history_preference(self._user_id)
        except Exception as e:
            record_error("store", type(e).__name__)
            logger.warning(
                "history_preference_failed",
                session_id=self._session_id,
                error=str(e),
            )

    async def _fail(self, stage: str, error: Exception) -> None:
        """Record a fatal initialization error and raise."""
        self._error = "Failed to initialize session. Please try again."
        self._show_fallback = True
        record_error("session", type(error).__name__)
        self._logger.fatal_error(stage, str(error))
        await self._voice_transition(VoiceState.FAILED, stage)

        voice, self._voice = self._voice, None
        if voice is not None:
            try:
                await voice.disconnect()
            except Exception as e:
                logger.warning("voice_cleanup_failed", session_id=self._session_id, error=str(e))

        raise SessionError(
            f"Failed to initialize session during {stage}: {error}",
            session_id=self._session_id,
            details={"stage": stage},
            recoverable=True,
        ) from error

    async def _connect_avatar(self) -> None:
        await self._avatar_transition(AvatarLinkState.CONNECTING, "initialize")

        self._avatar = self._avatar_factory(
            on_video_ready=self._on_avatar_video,
            on_connect=self._on_avatar_connect,
            on_disconnect=self._on_avatar_disconnect,
            on_error=self._on_avatar_error,
        )

        try:
            await self._avatar.connect()
        except Exception as e:
            if self._ended:
                return
            self._show_fallback = True
            record_degraded()
            self._logger.degraded(str(e))
            await self._avatar_transition(AvatarLinkState.FAILED, "avatar_connect_failed")
            return

        self._avatar_session_id = self._avatar.session_id
        await self._avatar_transition(AvatarLinkState.CONNECTED, "avatar_connected")

    async def _create_history_record(self) -> None:
        try:
            self._history_id = await self._store.create_session(
                self._user_id,
                f"Avatar Session - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
                voice_config_id=self._settings.hume_config_id or None,
                avatar_id=self._settings.heygen_avatar_id or None,
            )
            logger.info(
                "history_record_created",
                session_id=self._session_id,
                history_id=self._history_id,
            )
        except Exception as e:
            record_error("store", type(e).__name__)
            logger.warning("history_create_failed", session_id=self._session_id, error=str(e))

    # -------------------------------------------------------------------------
    # Voice callbacks
    # -------------------------------------------------------------------------

    async def _on_voice_connect(self) -> None:
        if self._ended:
            return
        if self._voice_fsm.state is not VoiceState.CONNECTING:
            await self._voice_transition(VoiceState.CONNECTING, "voice_reconnect")
        await self._voice_transition(VoiceState.CONNECTED, "voice_connected")
        self._error = None

        if self._voice_stalled:
            self._voice_stalled = False
            if not self._paused:
                self._timer.resume()

        if self._timer.start():
            self._started_at = datetime.now()
            record_session_start()
            self._logger.session_started()

    async def _on_voice_disconnect(self) -> None:
        if self._ended:
            return
        if self._voice_fsm.state is VoiceState.CONNECTED:
            self._error = "Voice connection lost"
            # Time spent reconnecting is not counted
            self._voice_stalled = True
            self._timer.pause()
        await self._voice_transition(VoiceState.DISCONNECTED, "voice_disconnected")

    async def _on_voice_error(self, error: Exception) -> None:
        if self._ended:
            return
        self._error = error.message if isinstance(error, TalkAIError) else str(error)
        logger.warning("voice_error", session_id=self._session_id, error=str(error))
        if self._voice is None or self._voice.is_connected or self._voice.is_reconnecting:
            return

        if not self._timer.started:
            await self._voice_transition(VoiceState.FAILED, "voice_failed")
            return

        # Voice is gone for good after going live: the session cannot continue
        self._voice_lost = True
        self._show_fallback = True
        record_error("voice", type(error).__name__)
        self._logger.fatal_error("voice_failed", str(error))
        await self.end("voice_failed")

    def on_voice_audio(self, frame: bytes) -> None:
        """Relay assistant audio to the avatar (fire-and-forget)."""
        avatar = self._avatar
        if self._ended or avatar is None:
            return
        task = asyncio.create_task(avatar.send_audio(frame))
        self._relay_tasks.add(task)
        task.add_done_callback(self._relay_tasks.discard)

    async def on_emotion_update(self, emotions: list[EmotionScore]) -> None:
        """Throttled: at most one update per window reaches the avatar."""
        if self._ended or not self._emotion_throttle.allow():
            return

        self._current_emotions = list(emotions)
        if not emotions:
            return

        top = emotions[0]
        logger.debug(
            "emotion_update",
            session_id=self._session_id,
            emotion=top.name,
            score=top.score,
        )

        avatar = self._avatar
        if avatar is not None and avatar.is_connected:
            expression = map_emotion_to_expression(top.name, top.score)
            if await avatar.set_expression(expression):
                self._current_expression = expression

        if self._history_enabled and self._history_id:
            self._emotion_persist(list(emotions))

    async def on_voice_message(self, message: TranscriptMessage) -> None:
        """Append to the transcript; persist when history is on."""
        self._transcript.append(message)

        if self._history_enabled and self._history_id:
            try:
                await self._store.save_message(self._history_id, message)
            except Exception as e:
                record_error("store", type(e).__name__)
                logger.warning("history_message_failed", session_id=self._session_id, error=str(e))

    async def _persist_emotions(self, emotions: list[EmotionScore]) -> None:
        if not self._history_id or self._store is None:
            return
        try:
            await self._store.save_emotion_metrics(self._history_id, emotions)
        except Exception as e:
            record_error("store", type(e).__name__)
            logger.warning("history_emotions_failed", session_id=self._session_id, error=str(e))

    # -------------------------------------------------------------------------
    # Avatar callbacks
    # -------------------------------------------------------------------------

    async def _on_avatar_video(self, track: Any) -> None:
        self._video_track = track
        await invoke_callback(self._on_video_ready, track, name="on_video_ready")

    async def _on_avatar_connect(self) -> None:
        if self._ended:
            return
        await self._avatar_transition(AvatarLinkState.CONNECTED, "avatar_connected")

    async def _on_avatar_disconnect(self) -> None:
        if self._ended or self._avatar_fsm.state is not AvatarLinkState.CONNECTED:
            return
        self._show_fallback = True
        record_degraded()
        self._logger.degraded("avatar transport dropped")
        await self._avatar_transition(AvatarLinkState.FAILED, "avatar_dropped")

    def _on_avatar_error(self, error: Exception) -> None:
        self._show_fallback = True
        logger.warning("avatar_error", session_id=self._session_id, error=str(error))

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    async def push_audio(self, pcm: bytes) -> bool:
        """Forward captured microphone audio to the voice stream."""
        if self._ended or self._voice is None:
            return False
        return await self._voice.push_audio(pcm)

    def toggle_mute(self) -> bool:
        """Mute/unmute local capture on the voice stream only.

        Returns:
            New muted state
        """
        if self._voice is None:
            return self._muted
        self._muted = not self._muted
        self._voice.set_muted(self._muted)
        return self._muted

    async def toggle_pause(self) -> bool:
        """Pause/resume the avatar and the timer; voice keeps running.

        Returns:
            New paused state
        """
        if self._ended:
            return self._paused

        if self._paused:
            if self._avatar is not None:
                await self._avatar.resume()
            if not self._voice_stalled:
                self._timer.resume()
        else:
            if self._avatar is not None:
                await self._avatar.pause()
            self._timer.pause()

        self._paused = not self._paused
        logger.info("session_pause_changed", session_id=self._session_id, paused=self._paused)
        return self._paused

    async def end(self, reason: str = "user") -> int:
        """Tear down both streams. Idempotent.

        Returns:
            Final duration in seconds
        """
        if self._ended:
            return self._timer.duration_seconds
        self._ended = True

        duration = await self._timer.stop()

        await self._emotion_persist.flush()

        voice, self._voice = self._voice, None
        if voice is not None:
            try:
                await voice.disconnect()
            except Exception as e:
                record_error("voice", type(e).__name__)
                logger.warning("voice_disconnect_failed", session_id=self._session_id, error=str(e))

        avatar = self._avatar
        if avatar is not None:
            try:
                await avatar.disconnect()
            except Exception as e:
                record_error("avatar", type(e).__name__)
                logger.warning("avatar_disconnect_failed", session_id=self._session_id, error=str(e))

        for task in list(self._relay_tasks):
            task.cancel()
        self._relay_tasks.clear()

        if self._history_enabled and self._history_id:
            try:
                await self._store.complete_session(self._history_id, duration)
            except Exception as e:
                record_error("store", type(e).__name__)
                logger.warning("history_complete_failed", session_id=self._session_id, error=str(e))

        await self._voice_transition(
            VoiceState.FAILED if self._voice_lost else VoiceState.DISCONNECTED,
            reason,
        )
        await self._avatar_transition(AvatarLinkState.CLOSED, reason)
        await self._refresh_status(reason)

        record_session_end(reason, duration, was_started=self._timer.started)
        self._logger.session_ended(reason=reason, duration_s=duration)
        return duration


OrchestratorFactory = Callable[..., SessionOrchestrator]


class SessionManager:
    """Manages concurrent orchestrated sessions.

    Usage:
        manager = SessionManager(max_sessions=10)

        session = await manager.create_session(user_id="user-1")
        await session.initialize()
        # ... use session ...
        await manager.end_session(session.session_id)
    """

    def __init__(
        self,
        max_sessions: int = RT.MAX_CONCURRENT_SESSIONS,
        orchestrator_factory: OrchestratorFactory | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self._max_sessions = max_sessions
        self._factory = orchestrator_factory or SessionOrchestrator
        self._store = store
        self._sessions: dict[str, SessionOrchestrator] = {}
        self._lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        """Number of active sessions."""
        return len(self._sessions)

    @property
    def available_slots(self) -> int:
        """Number of available session slots."""
        return self._max_sessions - len(self._sessions)

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    async def create_session(
        self,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> SessionOrchestrator | None:
        """Create a new (not yet initialized) session.

        Returns:
            New SessionOrchestrator, or None if at capacity
        """
        async with self._lock:
            if len(self._sessions) >= self._max_sessions:
                return None

            session = self._factory(
                session_id=session_id,
                user_id=user_id,
                store=self._store,
            )
            self._sessions[session.session_id] = session
            return session

    def get_session(self, session_id: str) -> SessionOrchestrator | None:
        """Get session by ID."""
        return self._sessions.get(session_id)

    async def end_session(self, session_id: str, reason: str = "user") -> bool:
        """End and remove a session.

        Returns:
            True if session was found and ended
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.end(reason)
        return True

    async def end_all_sessions(self, reason: str = "shutdown") -> int:
        """End all active sessions.

        Returns:
            Number of sessions ended
        """
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            try:
                await session.end(reason)
            except Exception as e:
                logger.error("session_end_failed", session_id=session.session_id, error=str(e))
        return len(sessions)

    async def close(self, reason: str = "shutdown") -> int:
        """End all sessions and release the history store.

        Returns:
            Number of sessions ended
        """
        ended = await self.end_all_sessions(reason)
        if self._store is not None:
            try:
                await self._store.aclose()
            except Exception as e:
                logger.warning("history_store_close_failed", error=str(e))
        return ended

    def list_sessions(self) -> list[str]:
        """List all active session IDs."""
        return list(self._sessions.keys())

    def get_sessions_by_status(self, status: SessionStatus) -> list[SessionOrchestrator]:
        return [s for s in self._sessions.values() if s.status is status]
