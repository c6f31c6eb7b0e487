"""Tests for the avatar Signaling/Session client."""

import asyncio
import base64
import json

import pytest

from talkai.avatar.audio_queue import OverflowPolicy
from talkai.avatar.client import AvatarState, HeyGenClient, HeyGenConfig
from talkai.avatar.expression import ExpressionCommand
from talkai.config.settings import Settings
from talkai.exceptions import AvatarAPIError, AvatarConnectionError, SessionStateError

from tests.conftest import PeerConnectionFactory


def make_config(**overrides) -> HeyGenConfig:
    values = {
        "api_key": "key",
        "avatar_id": "avatar-1",
        "quality": "high",
        "connect_timeout_s": 1.0,
        "audio_drain_delay_ms": 0,
    }
    values.update(overrides)
    return HeyGenConfig(**values)


def make_client(avatar_api, pc_factory, config=None, **callbacks) -> HeyGenClient:
    return HeyGenClient(
        config or make_config(),
        api=avatar_api,
        peer_connection_factory=pc_factory,
        **callbacks,
    )


def sent_messages(pc) -> list[dict]:
    return [json.loads(raw) for raw in pc.channels[0].sent]


class TestHeyGenConfig:
    """Tests for HeyGenConfig."""

    def test_defaults(self):
        config = HeyGenConfig(api_key="k", avatar_id="a")

        assert config.quality == "medium"
        assert config.stun_servers == [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ]
        assert config.turn_servers == []
        assert config.audio_queue_max_frames == 256
        assert config.audio_queue_overflow is OverflowPolicy.DROP_OLDEST
        assert config.audio_drain_delay_ms == 50
        assert config.transition_steps == 20

    def test_from_settings_with_turn(self):
        settings = Settings(
            heygen_api_key="hk",
            heygen_avatar_id="avatar-9",
            heygen_quality="low",
            webrtc_turn_server="turn:turn.example.com:3478",
            webrtc_turn_username="user",
            webrtc_turn_password="pass",
            audio_queue_overflow="drop_newest",
        )

        config = HeyGenConfig.from_settings(settings)

        assert config.api_key == "hk"
        assert config.avatar_id == "avatar-9"
        assert config.quality == "low"
        assert config.audio_queue_overflow is OverflowPolicy.DROP_NEWEST
        assert config.turn_servers == [{
            "urls": "turn:turn.example.com:3478",
            "username": "user",
            "credential": "pass",
        }]


class TestConnect:
    """Tests for connect()."""

    @pytest.mark.asyncio
    async def test_connect_success(self, avatar_api, pc_factory):
        """Session allocated, answer applied, transport connected."""
        connected = []
        client = make_client(avatar_api, pc_factory, on_connect=lambda: connected.append(True))

        await client.connect()

        assert client.get_status() is True
        assert client.state is AvatarState.CONNECTED
        assert client.session_id == "av-1"
        assert connected == [True]
        assert avatar_api.called("new_session") == [("avatar-1", None, "high")]

        session_id, offer = avatar_api.called("start_session")[0]
        assert session_id == "av-1"
        assert offer == {"type": "offer", "sdp": "v=0 offer"}

        pc = pc_factory.last
        assert pc.remoteDescription.sdp == "v=0 answer"
        assert [(t.kind, t.direction) for t in pc.transceivers] == [
            ("video", "recvonly"),
            ("audio", "recvonly"),
        ]
        assert pc.channels[0].label == "control"

    @pytest.mark.asyncio
    async def test_rtc_config_has_stun_and_turn(self, avatar_api, pc_factory):
        config = make_config(turn_servers=[{
            "urls": "turn:turn.example.com:3478",
            "username": "u",
            "credential": "p",
        }])
        client = make_client(avatar_api, pc_factory, config=config)

        await client.connect()

        servers = pc_factory.last.configuration.iceServers
        assert [s.urls for s in servers] == [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
            "turn:turn.example.com:3478",
        ]
        assert servers[2].username == "u"

    @pytest.mark.asyncio
    async def test_create_session_failure(self, avatar_api, pc_factory):
        """Remote message is kept verbatim; client becomes FAILED."""
        avatar_api.errors["new_session"] = AvatarAPIError("streaming.new", "no capacity", 500)
        errors = []
        client = make_client(avatar_api, pc_factory, on_error=errors.append)

        with pytest.raises(AvatarConnectionError) as exc_info:
            await client.connect()

        assert exc_info.value.stage == "create_session"
        assert isinstance(exc_info.value.cause, AvatarAPIError)
        assert exc_info.value.cause.remote_message == "no capacity"
        assert client.state is AvatarState.FAILED
        assert len(errors) == 1
        assert pc_factory.created == []

    @pytest.mark.asyncio
    async def test_negotiate_failure_releases_remote_session(self, avatar_api, pc_factory):
        avatar_api.errors["start_session"] = AvatarAPIError("streaming.start", "bad sdp", 400)
        client = make_client(avatar_api, pc_factory)

        with pytest.raises(AvatarConnectionError) as exc_info:
            await client.connect()

        assert exc_info.value.stage == "negotiate"
        assert pc_factory.last.closed is True
        assert avatar_api.called("stop_session") == [("av-1",)]
        assert client.session_id is None

    @pytest.mark.asyncio
    async def test_transport_timeout(self, avatar_api):
        pc_factory = PeerConnectionFactory(auto_connect=False)
        client = make_client(avatar_api, pc_factory, config=make_config(connect_timeout_s=0.05))

        with pytest.raises(AvatarConnectionError) as exc_info:
            await client.connect()

        assert exc_info.value.stage == "transport"
        assert client.state is AvatarState.FAILED

    @pytest.mark.asyncio
    async def test_transport_failed_during_connect(self, avatar_api):
        pc_factory = PeerConnectionFactory(connect_state="failed")
        client = make_client(avatar_api, pc_factory)

        with pytest.raises(AvatarConnectionError) as exc_info:
            await client.connect()

        assert exc_info.value.stage == "transport"
        assert client.get_status() is False

    @pytest.mark.asyncio
    async def test_reconnect_after_failure_rejected(self, avatar_api, pc_factory):
        avatar_api.errors["new_session"] = AvatarAPIError("streaming.new", "down")
        client = make_client(avatar_api, pc_factory)

        with pytest.raises(AvatarConnectionError):
            await client.connect()

        with pytest.raises(SessionStateError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_connect_after_disconnect_rejected(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.disconnect()

        with pytest.raises(SessionStateError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_disconnect_aborts_in_flight_connect(self, avatar_api, pc_factory):
        """Teardown mid-negotiation leaves no peer connection behind."""
        avatar_api.gate = asyncio.Event()
        client = make_client(avatar_api, pc_factory)

        connect_task = asyncio.create_task(client.connect())
        await asyncio.sleep(0)

        await client.disconnect()

        with pytest.raises(AvatarConnectionError) as exc_info:
            await connect_task

        assert exc_info.value.stage == "aborted"
        assert client.state is AvatarState.CLOSED
        assert pc_factory.created == []


class TestTransportEvents:
    """Tests for connection-state and track events."""

    @pytest.mark.asyncio
    async def test_drop_after_connect(self, avatar_api, pc_factory):
        dropped = []
        client = make_client(avatar_api, pc_factory, on_disconnect=lambda: dropped.append(True))
        await client.connect()

        await pc_factory.last.set_state("disconnected")

        assert client.state is AvatarState.DISCONNECTED
        assert client.is_connected is False
        assert dropped == [True]

    @pytest.mark.asyncio
    async def test_transport_recovers(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        await pc_factory.last.set_state("disconnected")
        await pc_factory.last.set_state("connected")

        assert client.state is AvatarState.CONNECTED
        assert client.get_status() is True

    @pytest.mark.asyncio
    async def test_frames_queued_during_drop_flushed_on_recovery(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        pc = pc_factory.last

        await pc.set_state("disconnected")
        await client.send_audio(b"\x01")
        await client.send_audio(b"\x02")
        assert client.queued_frames == 2

        await pc.set_state("connected")
        await client.wait_for_drain()

        frames = [base64.b64decode(m["data"]) for m in sent_messages(pc)]
        assert frames == [b"\x01", b"\x02"]
        assert client.queued_frames == 0

    @pytest.mark.asyncio
    async def test_video_track_reported(self, avatar_api, pc_factory):
        from tests.conftest import FakeTrack

        tracks = []
        client = make_client(avatar_api, pc_factory, on_video_ready=tracks.append)
        await client.connect()

        track = FakeTrack("video")
        await pc_factory.last.emit("track", track)

        assert tracks == [track]
        assert client.video_track is track


class TestSendAudio:
    """Tests for the lip-sync audio relay."""

    @pytest.mark.asyncio
    async def test_send_over_data_channel_when_connected(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        await client.send_audio(b"\x01\x02")

        messages = sent_messages(pc_factory.last)
        assert len(messages) == 1
        assert messages[0]["type"] == "audio"
        assert base64.b64decode(messages[0]["data"]) == b"\x01\x02"
        assert avatar_api.called("send_task") == []

    @pytest.mark.asyncio
    async def test_queued_frames_flushed_in_order_once(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)

        for i in range(5):
            await client.send_audio(bytes([i]))
        assert client.queued_frames == 5

        await client.connect()
        await client.wait_for_drain()

        frames = [base64.b64decode(m["data"]) for m in sent_messages(pc_factory.last)]
        assert frames == [bytes([i]) for i in range(5)]
        assert client.queued_frames == 0

    @pytest.mark.asyncio
    async def test_frames_sent_during_drain_keep_order(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory, config=make_config(audio_drain_delay_ms=5))
        for i in range(3):
            await client.send_audio(bytes([i]))

        await client.connect()
        await client.send_audio(b"\x09")
        await client.wait_for_drain()

        frames = [base64.b64decode(m["data"]) for m in sent_messages(pc_factory.last)]
        assert frames == [b"\x00", b"\x01", b"\x02", b"\x09"]

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        for _ in range(10):
            await client.send_audio(b"x")

        timestamps = [m["timestamp"] for m in sent_messages(pc_factory.last)]
        assert all(b > a for a, b in zip(timestamps, timestamps[1:]))

    @pytest.mark.asyncio
    async def test_drop_oldest_policy(self, avatar_api, pc_factory):
        config = make_config(audio_queue_max_frames=2)
        client = make_client(avatar_api, pc_factory, config=config)

        for frame in (b"a", b"b", b"c"):
            await client.send_audio(frame)

        assert client.audio_queue.pop() == b"b"
        assert client.audio_queue.pop() == b"c"

    @pytest.mark.asyncio
    async def test_drop_newest_policy(self, avatar_api, pc_factory):
        config = make_config(audio_queue_max_frames=2, audio_queue_overflow=OverflowPolicy.DROP_NEWEST)
        client = make_client(avatar_api, pc_factory, config=config)

        for frame in (b"a", b"b", b"c"):
            await client.send_audio(frame)

        assert client.audio_queue.pop() == b"a"
        assert client.audio_queue.pop() == b"b"
        assert client.audio_queue.dropped == 1

    @pytest.mark.asyncio
    async def test_http_fallback_when_channel_not_open(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        pc_factory.last.channels[0].readyState = "closing"

        await client.send_audio(b"\x05")

        assert avatar_api.called("send_task") == [("av-1", base64.b64encode(b"\x05").decode())]

    @pytest.mark.asyncio
    async def test_concurrent_http_sends_keep_order(self, avatar_api, pc_factory):
        """Earlier frames upload slower; they must still arrive first."""
        avatar_api.task_delays = {b"\x00": 0.03, b"\x01": 0.02, b"\x02": 0.01}
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        pc_factory.last.channels[0].readyState = "closing"

        await asyncio.gather(*(client.send_audio(bytes([i])) for i in range(3)))
        await client.wait_for_drain()

        assert avatar_api.uploaded == [b"\x00", b"\x01", b"\x02"]
        assert client.queued_frames == 0

    @pytest.mark.asyncio
    async def test_single_fallback_attempt_and_no_raise(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        pc_factory.last.channels[0].fail_send = True
        avatar_api.errors["send_task"] = AvatarAPIError("streaming.task", "busy", 503)

        await client.send_audio(b"\x05")

        assert len(avatar_api.called("send_task")) == 1


class TestExpressions:
    """Tests for expression commands and transitions."""

    @pytest.mark.asyncio
    async def test_set_expression_not_connected_is_noop(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)

        sent = await client.set_expression(ExpressionCommand("happy", 0.5))

        assert sent is False
        assert avatar_api.called("send_control") == []

    @pytest.mark.asyncio
    async def test_set_expression_round_trip(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        await client.set_expression(ExpressionCommand("happy", 0.8, 2000))

        message = sent_messages(pc_factory.last)[-1]
        assert message["type"] == "expression"
        assert message["emotion"] == "happy"
        assert message["intensity"] == 0.8
        assert message["duration"] == 2000
        assert ExpressionCommand.from_message(message) == ExpressionCommand("happy", 0.8, 2000)
        assert client.current_expression == ExpressionCommand("happy", 0.8, 2000)

    @pytest.mark.asyncio
    async def test_set_expression_http_fallback(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        pc_factory.last.channels[0].readyState = "closed"

        assert await client.set_expression(ExpressionCommand("sad", 0.3)) is True

        session_id, message = avatar_api.called("send_control")[0]
        assert session_id == "av-1"
        assert message["type"] == "expression"
        assert message["emotion"] == "sad"

    @pytest.mark.asyncio
    async def test_transition_interpolates(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        completed = await client.transition_expression(
            ExpressionCommand("calm", 0.0),
            ExpressionCommand("happy", 1.0),
            duration_ms=20,
        )

        messages = [m for m in sent_messages(pc_factory.last) if m["type"] == "expression"]
        assert completed is True
        assert len(messages) == 21
        assert messages[0]["intensity"] == pytest.approx(0.0)
        assert messages[10]["intensity"] == pytest.approx(0.5)
        assert messages[-1]["intensity"] == pytest.approx(1.0)
        assert all(m["emotion"] == "happy" for m in messages)

    @pytest.mark.asyncio
    async def test_new_transition_supersedes_old(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        slow = asyncio.create_task(client.transition_expression(
            ExpressionCommand("calm", 0.0),
            ExpressionCommand("sad", 1.0),
            duration_ms=400,
        ))
        await asyncio.sleep(0.05)

        fast = await client.transition_expression(
            ExpressionCommand("calm", 0.0),
            ExpressionCommand("happy", 1.0),
            duration_ms=20,
        )

        assert fast is True
        assert await slow is False
        assert client.current_expression.emotion == "happy"


class TestControl:
    """Tests for pause/resume."""

    @pytest.mark.asyncio
    async def test_pause_resume_messages(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()

        assert await client.pause() is True
        assert await client.resume() is True

        messages = sent_messages(pc_factory.last)
        assert messages == [
            {"type": "control", "action": "pause"},
            {"type": "control", "action": "resume"},
        ]

    @pytest.mark.asyncio
    async def test_pause_without_channel_is_silent(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)

        assert await client.pause() is False
        assert avatar_api.called("send_control") == []


class TestDisconnect:
    """Tests for teardown."""

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, avatar_api, pc_factory):
        disconnects = []
        client = make_client(avatar_api, pc_factory, on_disconnect=lambda: disconnects.append(True))
        await client.connect()
        pc = pc_factory.last

        await client.disconnect()
        await client.disconnect()

        assert client.state is AvatarState.CLOSED
        assert client.get_status() is False
        assert pc.closed is True
        assert avatar_api.called("stop_session") == [("av-1",)]
        assert disconnects == [True]

    @pytest.mark.asyncio
    async def test_disconnect_clears_queue(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.send_audio(b"a")
        await client.send_audio(b"b")

        await client.disconnect()

        assert client.queued_frames == 0

    @pytest.mark.asyncio
    async def test_stop_failure_is_swallowed(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        avatar_api.errors["stop_session"] = AvatarAPIError("streaming.stop", "gone", 404)

        await client.disconnect()

        assert client.state is AvatarState.CLOSED

    @pytest.mark.asyncio
    async def test_disconnect_from_on_error(self, avatar_api, pc_factory):
        """Re-entrant teardown from the error callback does not deadlock."""
        avatar_api.errors["start_session"] = AvatarAPIError("streaming.start", "bad sdp")
        holder = {}

        async def on_error(error):
            await holder["client"].disconnect()

        client = make_client(avatar_api, pc_factory, on_error=on_error)
        holder["client"] = client

        with pytest.raises(AvatarConnectionError):
            await client.connect()

        assert client.state is AvatarState.CLOSED

    @pytest.mark.asyncio
    async def test_send_after_disconnect_ignored(self, avatar_api, pc_factory):
        client = make_client(avatar_api, pc_factory)
        await client.connect()
        await client.disconnect()

        await client.send_audio(b"late")

        assert client.queued_frames == 0
