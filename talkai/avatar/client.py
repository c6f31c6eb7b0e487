"""Avatar Signaling/Session Client - aiortc-based avatar streaming.

Owns one WebRTC peer connection and one reliable "control" data channel to
the avatar rendering service, and provides:
- Remote session allocation and SDP offer/answer exchange
- Lip-sync audio relay with a bounded queue and HTTP fallback
- Expression commands and interpolated expression transitions
- Pause/resume control messages
- Idempotent teardown that also aborts an in-flight connect()

Lifecycle:
    IDLE -> CREATING_SESSION -> NEGOTIATING -> CONNECTED <-> DISCONNECTED
    any connect failure -> FAILED (terminal, re-create the client)
    disconnect() -> CLOSED (terminal)
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole

from talkai.avatar.api import AvatarAPIConfig, HeyGenAPI
from talkai.avatar.audio_queue import AudioQueue, OverflowPolicy
from talkai.avatar.expression import ExpressionCommand, interpolate_intensity
from talkai.config.constants import RT
from talkai.config.settings import Settings, get_settings
from talkai.exceptions import AvatarConnectionError, SessionStateError
from talkai.observability.logging import AvatarLogger, get_logger
from talkai.observability.metrics import (
    clear_audio_queue_depth,
    record_audio_dropped,
    record_audio_sent,
    record_avatar_connect_failure,
    record_avatar_connected,
    record_error,
    record_expression_sent,
    update_audio_queue_depth,
)
from talkai.utils.callbacks import Callback, invoke_callback

logger = get_logger(__name__)

T = TypeVar("T")

PeerConnectionFactory = Callable[[RTCConfiguration], RTCPeerConnection]


class AvatarState(Enum):
    """Avatar client lifecycle state."""

    IDLE = "idle"
    CREATING_SESSION = "creating_session"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({AvatarState.FAILED, AvatarState.CLOSED})


@dataclass
class HeyGenConfig:
    """Configuration for the avatar client."""

    api_key: str
    avatar_id: str
    voice_id: str | None = None
    quality: str = "medium"
    api_url: str = "https://api.heygen.com/v1"
    request_timeout_s: float = 10.0
    connect_timeout_s: float = RT.AVATAR_CONNECT_TIMEOUT_S
    stun_servers: list[str] = field(default_factory=lambda: list(RT.STUN_SERVERS))
    turn_servers: list[dict] = field(default_factory=list)
    audio_queue_max_frames: int = RT.AUDIO_QUEUE_MAX_FRAMES
    audio_queue_overflow: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    audio_drain_delay_ms: int = RT.AUDIO_DRAIN_DELAY_MS
    transition_steps: int = RT.EXPRESSION_TRANSITION_STEPS

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HeyGenConfig":
        """Build client configuration from application settings."""
        settings = settings or get_settings()
        turn_servers = []
        if settings.webrtc_turn_server:
            turn_servers.append({
                "urls": settings.webrtc_turn_server,
                "username": settings.webrtc_turn_username,
                "credential": settings.webrtc_turn_password,
            })

        return cls(
            api_key=settings.heygen_api_key or "",
            avatar_id=settings.heygen_avatar_id,
            voice_id=settings.heygen_voice_id,
            quality=settings.heygen_quality,
            api_url=settings.heygen_api_url,
            request_timeout_s=settings.heygen_request_timeout_s,
            connect_timeout_s=settings.heygen_connect_timeout_s,
            turn_servers=turn_servers,
            audio_queue_max_frames=settings.audio_queue_max_frames,
            audio_queue_overflow=OverflowPolicy(settings.audio_queue_overflow),
            audio_drain_delay_ms=settings.audio_drain_delay_ms,
        )


class _ConnectAborted(Exception):
    """disconnect() was requested while connect() was in flight."""


class HeyGenClient:
    """Avatar streaming client.

    Usage:
        client = HeyGenClient(
            HeyGenConfig(api_key="...", avatar_id="..."),
            on_video_ready=player.attach,
            on_disconnect=handle_drop,
        )
        await client.connect()

        await client.send_audio(frame)
        await client.set_expression(map_emotion_to_expression("joy", 0.6))

        await client.disconnect()
    """

    def __init__(
        self,
        config: HeyGenConfig,
        *,
        on_video_ready: Callback | None = None,
        on_connect: Callback | None = None,
        on_disconnect: Callback | None = None,
        on_error: Callback | None = None,
        api: HeyGenAPI | None = None,
        peer_connection_factory: PeerConnectionFactory | None = None,
        session_label: str | None = None,
    ) -> None:
        self._config = config
        self._on_video_ready = on_video_ready
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_error = on_error

        self._owns_api = api is None
        self._api = api or HeyGenAPI(AvatarAPIConfig(
            api_key=config.api_key,
            base_url=config.api_url,
            timeout_s=config.request_timeout_s,
        ))
        self._pc_factory = peer_connection_factory or RTCPeerConnection
        self._label = session_label or "avatar"
        self._logger = AvatarLogger(session_label)

        self._state = AvatarState.IDLE
        self._session_id: str | None = None
        self._pc: RTCPeerConnection | None = None
        self._channel: RTCDataChannel | None = None
        self._video_track: MediaStreamTrack | None = None
        self._blackhole: MediaBlackhole | None = None
        self._is_connected = False
        self._closing = False

        self._abort = asyncio.Event()
        self._transport_ready: asyncio.Future | None = None

        self._queue = AudioQueue(config.audio_queue_max_frames, config.audio_queue_overflow)
        self._drain_task: asyncio.Task | None = None
        self._sending = False
        self._last_timestamp = 0

        self._transition_generation = 0
        self._current_expression: ExpressionCommand | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AvatarState:
        """Current lifecycle state."""
        return self._state

    @property
    def session_id(self) -> str | None:
        """Remote avatar session id (None until allocated)."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Whether the transport is currently connected."""
        return self._is_connected

    @property
    def video_track(self) -> MediaStreamTrack | None:
        """Inbound avatar video track, once received."""
        return self._video_track

    @property
    def current_expression(self) -> ExpressionCommand | None:
        """Most recently sent expression."""
        return self._current_expression

    @property
    def queued_frames(self) -> int:
        """Audio frames waiting for the connection."""
        return len(self._queue)

    @property
    def audio_queue(self) -> AudioQueue:
        return self._queue

    def get_status(self) -> bool:
        """Connection status."""
        return self._is_connected

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def _set_state(self, new_state: AvatarState) -> None:
        if new_state is self._state:
            return
        self._logger.state_change(self._state.value, new_state.value)
        self._state = new_state

    def _create_rtc_config(self) -> RTCConfiguration:
        """Create RTCConfiguration with STUN/TURN servers."""
        ice_servers = []

        for stun in self._config.stun_servers:
            ice_servers.append(RTCIceServer(urls=stun))

        for turn in self._config.turn_servers:
            ice_servers.append(RTCIceServer(
                urls=turn.get("urls", ""),
                username=turn.get("username"),
                credential=turn.get("credential"),
            ))

        return RTCConfiguration(iceServers=ice_servers)

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await an operation unless disconnect() aborts it first."""
        task = asyncio.ensure_future(awaitable)
        abort = asyncio.ensure_future(self._abort.wait())
        try:
            done, _ = await asyncio.wait(
                {task, abort},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise _ConnectAborted()

    async def connect(self) -> None:
        """Allocate a remote session and negotiate the WebRTC transport.

        Returns once the transport first reports connected.

        Raises:
            AvatarConnectionError: If any stage fails or disconnect() aborts it
            SessionStateError: If the client was already used
        """
        if self._state in TERMINAL_STATES:
            raise SessionStateError(
                "Avatar client cannot reconnect after failure or teardown; create a new client",
                current_state=self._state.value,
                target_state=AvatarState.CREATING_SESSION.value,
            )
        if self._state is not AvatarState.IDLE:
            raise SessionStateError(
                "Avatar client is already connecting or connected",
                current_state=self._state.value,
                target_state=AvatarState.CREATING_SESSION.value,
            )

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        self._transport_ready = loop.create_future()
        stage = "create_session"

        try:
            self._set_state(AvatarState.CREATING_SESSION)
            self._session_id = await self._guard(self._api.new_session(
                self._config.avatar_id,
                self._config.voice_id,
                self._config.quality,
            ))
            self._logger.bind(self._session_id)

            stage = "negotiate"
            self._set_state(AvatarState.NEGOTIATING)
            pc = self._pc_factory(self._create_rtc_config())
            self._pc = pc
            self._wire_peer_connection(pc)

            pc.addTransceiver("video", direction="recvonly")
            pc.addTransceiver("audio", direction="recvonly")

            self._channel = pc.createDataChannel(RT.CONTROL_CHANNEL_LABEL)
            self._wire_data_channel(self._channel)

            offer = await self._guard(pc.createOffer())
            await self._guard(pc.setLocalDescription(offer))

            local = pc.localDescription
            answer = await self._guard(self._api.start_session(
                self._session_id,
                {"type": local.type, "sdp": local.sdp},
            ))
            await self._guard(pc.setRemoteDescription(
                RTCSessionDescription(sdp=answer["sdp"], type=answer["type"])
            ))

            stage = "transport"
            try:
                await self._guard(asyncio.wait_for(
                    asyncio.shield(self._transport_ready),
                    timeout=self._config.connect_timeout_s,
                ))
            except asyncio.TimeoutError:
                raise AvatarConnectionError(
                    "transport",
                    f"not connected after {self._config.connect_timeout_s}s",
                )

        except _ConnectAborted:
            record_avatar_connect_failure("aborted")
            self._logger.connect_failed("aborted", "disconnect requested during connect")
            raise AvatarConnectionError(
                "aborted", "disconnect requested during connect"
            ) from None

        except Exception as e:
            error = e if isinstance(e, AvatarConnectionError) else AvatarConnectionError(
                stage, str(e), cause=e
            )
            record_avatar_connect_failure(error.stage)
            record_error("avatar", type(e).__name__)
            self._logger.connect_failed(error.stage, str(e))
            await self._teardown_failed()
            await invoke_callback(self._on_error, error, name="on_error")
            raise error from e

        finally:
            self._transport_ready = None

        record_avatar_connected(time.monotonic() - started)
        logger.info(
            "avatar_connected",
            session=self._label,
            avatar_session_id=self._session_id,
        )

        if len(self._queue):
            self._ensure_drain()

    def _wire_peer_connection(self, pc: RTCPeerConnection) -> None:
        """Register peer connection event handlers."""

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            if pc is not self._pc:
                return
            await self._handle_transport_state(pc.connectionState)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            if pc is not self._pc:
                return
            await self._handle_track(track)

    def _wire_data_channel(self, channel: RTCDataChannel) -> None:
        """Register control channel event handlers."""

        @channel.on("open")
        def on_open() -> None:
            logger.info("control_channel_open", session=self._label)

        @channel.on("message")
        def on_message(message: Any) -> None:
            logger.debug("control_channel_message", session=self._label, message=str(message)[:200])

        @channel.on("close")
        def on_close() -> None:
            logger.info("control_channel_close", session=self._label)

    async def _handle_transport_state(self, state: str) -> None:
        self._logger.transport_state(state)
        ready = self._transport_ready

        if state == "connected":
            self._is_connected = True
            self._set_state(AvatarState.CONNECTED)
            if ready is not None and not ready.done():
                ready.set_result(True)
            await invoke_callback(self._on_connect, name="on_connect")

            # connect() flushes on its own; this covers recovery after a drop
            if ready is None and len(self._queue) and not self._closing and not self._sending:
                self._ensure_drain()

        elif state in ("disconnected", "failed"):
            was_connected = self._is_connected
            self._is_connected = False
            if ready is not None and not ready.done():
                ready.set_exception(AvatarConnectionError("transport", f"peer connection {state}"))
            elif was_connected and self._state is AvatarState.CONNECTED:
                self._set_state(AvatarState.DISCONNECTED)
                await invoke_callback(self._on_disconnect, name="on_disconnect")

    async def _handle_track(self, track: MediaStreamTrack) -> None:
        if track.kind == "video":
            logger.info("avatar_video_track_received", session=self._label)
            self._video_track = track
            if self._on_video_ready is not None:
                await invoke_callback(self._on_video_ready, track, name="on_video_ready")
                return

        # Unconsumed tracks are drained so the receiver does not buffer them
        if self._blackhole is None:
            self._blackhole = MediaBlackhole()
        self._blackhole.addTrack(track)
        await self._blackhole.start()

    async def _close_transport(self) -> None:
        """Close data channel and peer connection."""
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        blackhole, self._blackhole = self._blackhole, None

        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.warning("control_channel_close_error", session=self._label, error=str(e))

        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning("peer_connection_close_error", session=self._label, error=str(e))

        if blackhole is not None:
            await blackhole.stop()

    async def _stop_remote_session(self) -> None:
        """Release the remote session, best-effort."""
        session_id, self._session_id = self._session_id, None
        if session_id is None:
            return
        try:
            await self._api.stop_session(session_id)
        except Exception as e:
            record_error("avatar", "stop_session")
            logger.warning(
                "avatar_stop_session_failed",
                session=self._label,
                avatar_session_id=session_id,
                error=str(e),
            )

    async def _teardown_failed(self) -> None:
        self._is_connected = False
        await self._close_transport()
        await self._stop_remote_session()
        self._set_state(AvatarState.FAILED)

    async def disconnect(self) -> None:
        """Tear down the transport and release the remote session.

        Idempotent; safe on a failed client, from within callbacks, and while
        connect() is still in flight (which then raises).
        """
        if self._closing or self._state is AvatarState.CLOSED:
            return
        self._closing = True

        logger.info("avatar_disconnecting", session=self._label)

        self._abort.set()
        self._transition_generation += 1
        self._is_connected = False

        drain_task, self._drain_task = self._drain_task, None
        if drain_task is not None and not drain_task.done():
            drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drain_task

        await self._close_transport()
        await self._stop_remote_session()

        record_audio_dropped("disconnect", self._queue.clear())
        clear_audio_queue_depth(self._label)

        self._video_track = None
        self._current_expression = None
        self._set_state(AvatarState.CLOSED)

        if self._owns_api:
            await self._api.aclose()

        logger.info("avatar_disconnected", session=self._label)
        await invoke_callback(self._on_disconnect, name="on_disconnect")

    # -------------------------------------------------------------------------
    # Data channel helpers
    # -------------------------------------------------------------------------

    def _channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    def _next_timestamp(self) -> int:
        """Wall-clock ms, strictly increasing across sends."""
        now_ms = int(time.time() * 1000)
        self._last_timestamp = max(now_ms, self._last_timestamp + 1)
        return self._last_timestamp

    def _send_on_channel(self, message: dict[str, Any]) -> bool:
        if not self._channel_open():
            return False
        self._channel.send(json.dumps(message))
        return True

    # -------------------------------------------------------------------------
    # Audio relay
    # -------------------------------------------------------------------------

    async def send_audio(self, frame: bytes) -> None:
        """Relay a lip-sync audio frame.

        Not connected: the frame is queued (bounded). Connected: sent over the
        data channel, or the HTTP fallback when the channel is not open.
        Frames already queued are sent first, so order is preserved.
        Send failures are logged and the frame dropped.
        """
        if self._state in TERMINAL_STATES or self._closing:
            return

        if (
            not self._is_connected
            or self._sending
            or self._drain_task is not None
            or len(self._queue)
        ):
            self._enqueue(frame)
            if self._is_connected and not self._sending:
                self._ensure_drain()
            return

        # Frames arriving while this send is in flight queue behind it
        self._sending = True
        try:
            await self._send_frame(frame)
        finally:
            self._sending = False

        if self._is_connected and len(self._queue):
            self._ensure_drain()

    def _enqueue(self, frame: bytes) -> None:
        if self._queue.put(frame):
            record_audio_dropped(self._queue.policy.value)
            self._logger.audio_dropped(self._queue.policy.value, len(self._queue))
        update_audio_queue_depth(self._label, len(self._queue))

    async def _send_frame(self, frame: bytes) -> bool:
        """Send one frame; at most one fallback attempt."""
        audio_b64 = base64.b64encode(frame).decode("ascii")

        if self._channel_open():
            try:
                self._send_on_channel({
                    "type": "audio",
                    "data": audio_b64,
                    "timestamp": self._next_timestamp(),
                })
                record_audio_sent("data_channel")
                return True
            except Exception as e:
                self._logger.send_failed("audio", "data_channel", str(e))

        session_id = self._session_id
        if session_id is None:
            record_audio_dropped("send_error")
            return False

        try:
            await self._api.send_task(session_id, audio_b64)
            record_audio_sent("http")
            return True
        except Exception as e:
            record_audio_dropped("send_error")
            record_error("avatar", "send_audio")
            self._logger.send_failed("audio", "http", str(e))
            return False

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_queue())

    async def _drain_queue(self) -> None:
        """Send queued frames in FIFO order with a fixed inter-send delay."""
        delay_s = self._config.audio_drain_delay_ms / 1000.0
        try:
            while self._is_connected:
                frame = self._queue.pop()
                if frame is None:
                    break
                update_audio_queue_depth(self._label, len(self._queue))
                await self._send_frame(frame)
                if len(self._queue):
                    await asyncio.sleep(delay_s)
        finally:
            if self._drain_task is asyncio.current_task():
                self._drain_task = None

    async def wait_for_drain(self) -> None:
        """Wait until the queued-frame flush in progress completes."""
        task = self._drain_task
        if task is not None:
            await asyncio.shield(task)

    # -------------------------------------------------------------------------
    # Expressions and control
    # -------------------------------------------------------------------------

    async def set_expression(self, expression: ExpressionCommand) -> bool:
        """Send an expression command.

        Not queued: a command issued while disconnected is dropped.

        Returns:
            True if sent
        """
        if not self._is_connected:
            logger.debug("expression_skipped_not_connected", session=self._label)
            return False

        message = expression.to_message(self._next_timestamp())
        self._current_expression = expression

        if self._channel_open():
            try:
                self._send_on_channel(message)
                record_expression_sent("data_channel")
                return True
            except Exception as e:
                self._logger.send_failed("expression", "data_channel", str(e))

        session_id = self._session_id
        if session_id is None:
            return False

        try:
            await self._api.send_control(session_id, message)
            record_expression_sent("http")
            return True
        except Exception as e:
            record_error("avatar", "set_expression")
            self._logger.send_failed("expression", "http", str(e))
            return False

    async def transition_expression(
        self,
        from_expression: ExpressionCommand,
        to_expression: ExpressionCommand,
        duration_ms: int = RT.EXPRESSION_TRANSITION_MS,
    ) -> bool:
        """Interpolate intensity linearly from one expression to another.

        A newer transition (or disconnect) supersedes this one; the stale
        loop stops before its next send.

        Returns:
            True if the transition ran to completion
        """
        self._transition_generation += 1
        generation = self._transition_generation

        steps = self._config.transition_steps
        step_ms = duration_ms / steps

        for i in range(steps + 1):
            if generation != self._transition_generation:
                return False

            await self.set_expression(ExpressionCommand(
                emotion=to_expression.emotion,
                intensity=interpolate_intensity(
                    from_expression.intensity,
                    to_expression.intensity,
                    i / steps,
                ),
                duration_ms=int(step_ms),
            ))
            await asyncio.sleep(step_ms / 1000.0)

        return generation == self._transition_generation

    def _send_control(self, action: str) -> bool:
        # Dropped silently when the channel is not open
        try:
            return self._send_on_channel({"type": "control", "action": action})
        except Exception as e:
            self._logger.send_failed("control", "data_channel", str(e))
            return False

    async def pause(self) -> bool:
        """Pause avatar rendering."""
        return self._send_control("pause")

    async def resume(self) -> bool:
        """Resume avatar rendering."""
        return self._send_control("resume")


def create_heygen_client(
    settings: Settings | None = None,
    **kwargs: Any,
) -> HeyGenClient:
    """Create an avatar client from application settings.

    Args:
        settings: Optional settings (default: cached settings)
        **kwargs: Callbacks and injectables forwarded to HeyGenClient

    Returns:
        HeyGenClient instance
    """
    return HeyGenClient(HeyGenConfig.from_settings(settings), **kwargs)
