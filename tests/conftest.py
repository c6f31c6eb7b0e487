"""Pytest configuration and shared fixtures."""

import asyncio
import base64
import inspect
import os
from typing import Any, Generator

import pytest
from aiortc import RTCSessionDescription
from fastapi.testclient import TestClient

# Set test environment variables before importing settings
os.environ.update({
    "ENVIRONMENT": "development",
    "MAX_CONCURRENT_SESSIONS": "5",
    "HEYGEN_API_KEY": "test-heygen-key",
    "HEYGEN_AVATAR_ID": "test-avatar",
    "HUME_API_KEY": "test-hume-key",
    "HUME_SECRET_KEY": "test-hume-secret",
    "HUME_CONFIG_ID": "test-config",
})
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("SUPABASE_KEY", None)


# -----------------------------------------------------------------------------
# WebRTC fakes
# -----------------------------------------------------------------------------


class _Emitter:
    """Minimal pyee-style ``on`` decorator registry."""

    def __init__(self) -> None:
        self._handlers: dict[str, list] = {}

    def on(self, event: str, f=None):
        def register(handler):
            self._handlers.setdefault(event, []).append(handler)
            return handler

        if f is None:
            return register
        return register(f)

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result


class FakeDataChannel(_Emitter):
    """Stands in for aiortc RTCDataChannel."""

    def __init__(self, label: str) -> None:
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.sent: list[str] = []
        self.fail_send = False

    def send(self, data: str) -> None:
        if self.readyState != "open":
            raise RuntimeError("channel not open")
        if self.fail_send:
            raise RuntimeError("send failed")
        self.sent.append(data)

    def close(self) -> None:
        self.readyState = "closed"


class FakeTransceiver:
    def __init__(self, kind: str, direction: str) -> None:
        self.kind = kind
        self.direction = direction


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind


class FakePeerConnection(_Emitter):
    """Stands in for aiortc RTCPeerConnection.

    With ``auto_connect`` the transport reports ``connect_state`` right
    after the remote description is applied, opening data channels on
    ``connected``.
    """

    def __init__(
        self,
        configuration=None,
        auto_connect: bool = True,
        connect_state: str = "connected",
    ) -> None:
        super().__init__()
        self.configuration = configuration
        self.auto_connect = auto_connect
        self.connect_state = connect_state
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.transceivers: list[FakeTransceiver] = []
        self.channels: list[FakeDataChannel] = []
        self.closed = False

    def addTransceiver(self, kind: str, direction: str = "sendrecv") -> FakeTransceiver:
        transceiver = FakeTransceiver(kind, direction)
        self.transceivers.append(transceiver)
        return transceiver

    def createDataChannel(self, label: str) -> FakeDataChannel:
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp="v=0 offer", type="offer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.remoteDescription = description
        if self.auto_connect:
            asyncio.get_running_loop().create_task(self.set_state(self.connect_state))

    async def set_state(self, state: str) -> None:
        self.connectionState = state
        if state == "connected":
            for channel in self.channels:
                if channel.readyState == "connecting":
                    channel.readyState = "open"
                    await channel.emit("open")
        await self.emit("connectionstatechange")

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"
        for channel in self.channels:
            channel.readyState = "closed"


class PeerConnectionFactory:
    """Records every peer connection the client creates."""

    def __init__(self, **options: Any) -> None:
        self.options = options
        self.created: list[FakePeerConnection] = []

    def __call__(self, configuration=None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration, **self.options)
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeAvatarAPI:
    """Stands in for HeyGenAPI; records calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.errors: dict[str, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.task_delays: dict[bytes, float] = {}
        self.uploaded: list[bytes] = []
        self.session_id = "av-1"
        self.closed = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.errors:
            raise self.errors[name]

    def called(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    async def new_session(self, avatar_id, voice_id, quality) -> str:
        if self.gate is not None:
            await self.gate.wait()
        self._record("new_session", avatar_id, voice_id, quality)
        return self.session_id

    async def start_session(self, session_id, offer) -> dict:
        self._record("start_session", session_id, offer)
        return {"type": "answer", "sdp": "v=0 answer"}

    async def send_task(self, session_id, audio_b64) -> None:
        self._record("send_task", session_id, audio_b64)
        frame = base64.b64decode(audio_b64)
        delay = self.task_delays.get(frame)
        if delay:
            await asyncio.sleep(delay)
        self.uploaded.append(frame)

    async def send_control(self, session_id, message) -> None:
        self._record("send_control", session_id, message)

    async def stop_session(self, session_id) -> None:
        self._record("stop_session", session_id)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def pc_factory() -> PeerConnectionFactory:
    return PeerConnectionFactory()


@pytest.fixture
def avatar_api() -> FakeAvatarAPI:
    return FakeAvatarAPI()


# -----------------------------------------------------------------------------
# Orchestrator collaborators
# -----------------------------------------------------------------------------


class FakeVoiceClient:
    """Stands in for HumeClient; tests drive its callbacks."""

    def __init__(self, config, **callbacks: Any) -> None:
        self.config = config
        self.callbacks = callbacks
        self.connect_error: Exception | None = None
        self.is_connected = False
        self.is_reconnecting = False
        self.muted = False
        self.pushed: list[bytes] = []
        self.disconnect_calls = 0

    async def _fire(self, name: str, *args: Any) -> None:
        callback = self.callbacks.get(name)
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = True
        await self._fire("on_connect")

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.is_connected = False

    def set_muted(self, muted: bool) -> None:
        self.muted = muted

    async def push_audio(self, pcm: bytes) -> bool:
        if self.muted or not self.is_connected:
            return False
        self.pushed.append(pcm)
        return True

    async def drop(self) -> None:
        self.is_connected = False
        await self._fire("on_disconnect")

    async def emit_message(self, message) -> None:
        await self._fire("on_message", message)

    async def emit_emotions(self, emotions) -> None:
        await self._fire("on_emotion", emotions)

    async def emit_audio(self, frame: bytes) -> None:
        await self._fire("on_audio", frame)


class FakeAvatarClient:
    """Stands in for HeyGenClient."""

    def __init__(self, **callbacks: Any) -> None:
        self.callbacks = callbacks
        self.connect_error: Exception | None = None
        self.session_id: str | None = None
        self.is_connected = False
        self.audio: list[bytes] = []
        self.expressions: list = []
        self.controls: list[str] = []
        self.disconnect_calls = 0

    async def _fire(self, name: str, *args: Any) -> None:
        callback = self.callbacks.get(name)
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def connect(self) -> None:
        if self.connect_error is not None:
            await self._fire("on_error", self.connect_error)
            raise self.connect_error
        self.session_id = "av-1"
        self.is_connected = True
        await self._fire("on_connect")

    async def send_audio(self, frame: bytes) -> None:
        self.audio.append(frame)

    async def set_expression(self, expression) -> bool:
        if not self.is_connected:
            return False
        self.expressions.append(expression)
        return True

    async def pause(self) -> bool:
        self.controls.append("pause")
        return True

    async def resume(self) -> bool:
        self.controls.append("resume")
        return True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.is_connected = False
        await self._fire("on_disconnect")

    async def drop(self) -> None:
        self.is_connected = False
        await self._fire("on_disconnect")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# -----------------------------------------------------------------------------
# Settings and app
# -----------------------------------------------------------------------------


@pytest.fixture
def test_settings():
    """Provide test settings instance."""
    from talkai.config.settings import Settings
    return Settings(
        max_concurrent_sessions=5,
        heygen_api_key="test-heygen-key",
        heygen_avatar_id="test-avatar",
        hume_api_key="test-hume-key",
        hume_secret_key="test-hume-secret",
        hume_config_id="test-config",
    )


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Provide FastAPI test client."""
    from talkai.main import app
    with TestClient(app) as c:
        yield c
