"""Voice/Emotion Stream Client - bidirectional voice chat over WebSocket.

Streams microphone PCM to the voice service and receives:
- user/assistant transcript messages with prosody emotion scores
- synthesized assistant audio (relayed to the avatar for lip-sync)

On an unexpected close the client reconnects with linear backoff
(delay * attempt). An explicit disconnect() disables reconnection.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from talkai.config.constants import RT
from talkai.config.settings import Settings, get_settings
from talkai.exceptions import VoiceConnectionError, VoiceError
from talkai.observability.logging import get_logger
from talkai.observability.metrics import record_error
from talkai.utils.callbacks import Callback, invoke_callback
from talkai.utils.websocket_retry import RetryConfig, RetryExhausted, with_retry
from talkai.voice.messages import CHAT_MESSAGE_TYPES, parse_chat_message

logger = get_logger(__name__)

ConnectFn = Callable[[str], Awaitable[Any]]

STATUS_CONNECTED = "connected"
STATUS_CONNECTING = "connecting"
STATUS_DISCONNECTED = "disconnected"


@dataclass
class HumeConfig:
    """Configuration for the voice stream client."""

    config_id: str
    access_token: str
    ws_url: str = "wss://api.hume.ai/v0/evi/chat"
    max_reconnect_attempts: int = RT.VOICE_MAX_RECONNECT_ATTEMPTS
    reconnect_delay_ms: int = RT.VOICE_RECONNECT_DELAY_MS

    @classmethod
    def from_settings(cls, access_token: str, settings: Settings | None = None) -> "HumeConfig":
        settings = settings or get_settings()
        return cls(
            config_id=settings.hume_config_id,
            access_token=access_token,
            ws_url=settings.hume_ws_url,
        )

    @property
    def url(self) -> str:
        query = urlencode({"config_id": self.config_id, "access_token": self.access_token})
        return f"{self.ws_url}?{query}"

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_reconnect_attempts,
            initial_delay_s=self.reconnect_delay_ms / 1000.0,
            jitter=False,
            linear=True,
            delay_first=True,
        )


class HumeClient:
    """Voice/emotion stream client.

    Usage:
        client = HumeClient(
            HumeConfig(config_id="...", access_token=token),
            on_message=transcript.append,
            on_emotion=handle_emotions,
            on_audio=avatar_relay,
        )
        await client.connect()
        await client.push_audio(pcm)
        await client.disconnect()
    """

    def __init__(
        self,
        config: HumeConfig,
        *,
        on_message: Callback | None = None,
        on_emotion: Callback | None = None,
        on_audio: Callback | None = None,
        on_error: Callback | None = None,
        on_connect: Callback | None = None,
        on_disconnect: Callback | None = None,
        connect_fn: ConnectFn | None = None,
        session_label: str | None = None,
    ) -> None:
        self._config = config
        self._on_message = on_message
        self._on_emotion = on_emotion
        self._on_audio = on_audio
        self._on_error = on_error
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._connect_fn = connect_fn or websockets.connect
        self._label = session_label or "voice"

        self._ws: Any = None
        self._status = STATUS_DISCONNECTED
        self._muted = False
        self._closed = False
        self._pending_messages: list[dict[str, Any]] = []

        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    @property
    def status(self) -> str:
        """connected | connecting | disconnected."""
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == STATUS_CONNECTED

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def pending_messages(self) -> int:
        """Text messages waiting for a connection."""
        return len(self._pending_messages)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the voice stream.

        Raises:
            VoiceConnectionError: If the WebSocket cannot be opened
        """
        if self._closed:
            raise VoiceConnectionError("hume", "client was disconnected")

        try:
            await self._open()
        except VoiceConnectionError:
            raise
        except Exception as e:
            record_error("voice", type(e).__name__)
            logger.error("voice_connect_failed", session=self._label, error=str(e))
            raise VoiceConnectionError("hume", str(e)) from e

    async def _open(self) -> None:
        self._status = STATUS_CONNECTING
        logger.info("voice_connecting", session=self._label)

        try:
            ws = await self._connect_fn(self._config.url)
        except BaseException:
            self._status = STATUS_DISCONNECTED
            raise

        if self._closed:
            await ws.close()
            self._status = STATUS_DISCONNECTED
            raise VoiceConnectionError("hume", "client was disconnected")

        self._ws = ws
        self._status = STATUS_CONNECTED
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        logger.info("voice_connected", session=self._label)

        await invoke_callback(self._on_connect, name="on_connect")
        await self._flush_pending()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except ConnectionClosed as e:
            logger.info("voice_stream_closed", session=self._label, code=e.rcvd.code if e.rcvd else None)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record_error("voice", type(e).__name__)
            logger.error("voice_stream_error", session=self._label, error=str(e))
            await invoke_callback(self._on_error, VoiceError(f"Voice stream error: {e}"), name="on_error")

        if ws is not self._ws:
            return

        # Unexpected close
        self._ws = None
        self._status = STATUS_DISCONNECTED
        logger.info("voice_disconnected", session=self._label)
        await invoke_callback(self._on_disconnect, name="on_disconnect")

        if not self._closed:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await with_retry(
                self._open,
                config=self._config.retry_config,
                operation_name="voice_reconnect",
                session_id=self._label,
            )
        except RetryExhausted as e:
            self._status = STATUS_DISCONNECTED
            self._reconnect_task = None
            await invoke_callback(
                self._on_error,
                VoiceConnectionError("hume", f"reconnect failed after {e.attempts} attempts"),
                name="on_error",
            )

    async def disconnect(self) -> None:
        """Close the stream and disable reconnection. Idempotent."""
        if self._closed:
            return
        self._closed = True

        was_connected = self._ws is not None
        ws, self._ws = self._ws, None
        self._status = STATUS_DISCONNECTED

        for task in (self._reconnect_task, self._reader_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._reader_task = None

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("voice_close_error", session=self._label, error=str(e))

        self._pending_messages.clear()
        logger.info("voice_disconnect_requested", session=self._label)

        if was_connected:
            await invoke_callback(self._on_disconnect, name="on_disconnect")

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("voice_message_unparseable", session=self._label, error=str(e))
            return

        if not isinstance(data, dict):
            logger.warning("voice_message_unparseable", session=self._label, error="not an object")
            return

        msg_type = data.get("type")

        if msg_type in CHAT_MESSAGE_TYPES:
            message = parse_chat_message(data)
            await invoke_callback(self._on_message, message, name="on_message")
            if message.emotions:
                await invoke_callback(self._on_emotion, message.emotions, name="on_emotion")

        elif msg_type == "audio_output":
            encoded = data.get("data")
            if not encoded:
                return
            try:
                audio = base64.b64decode(encoded)
            except (binascii.Error, ValueError) as e:
                logger.warning("voice_audio_undecodable", session=self._label, error=str(e))
                return
            await invoke_callback(self._on_audio, audio, name="on_audio")

        elif msg_type == "error":
            record_error("voice", "remote_error")
            logger.warning(
                "voice_remote_error",
                session=self._label,
                code=data.get("code"),
                message=data.get("message"),
            )
            await invoke_callback(
                self._on_error,
                VoiceError(data.get("message") or "Voice service error", details={"code": data.get("code")}),
                name="on_error",
            )

        else:
            logger.debug("voice_message_ignored", session=self._label, type=msg_type)

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def _send(self, message: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except Exception as e:
            logger.warning("voice_send_failed", session=self._label, type=message.get("type"), error=str(e))
            return False

    async def _flush_pending(self) -> None:
        while self._pending_messages and self._ws is not None:
            await self._send(self._pending_messages.pop(0))

    def set_muted(self, muted: bool) -> None:
        """Mute/unmute local capture; muted audio is not sent."""
        self._muted = muted
        logger.info("voice_mute_changed", session=self._label, muted=muted)

    async def push_audio(self, pcm: bytes) -> bool:
        """Send captured PCM to the voice service.

        Returns:
            True if sent (False when muted or not connected)
        """
        if self._muted or not self.is_connected:
            return False
        return await self._send({
            "type": "audio_input",
            "data": base64.b64encode(pcm).decode("ascii"),
        })

    async def send_text_message(self, text: str) -> bool:
        """Send a typed user message; queued while disconnected.

        Returns:
            True if sent immediately
        """
        message = {
            "type": "user_message",
            "content": text,
            "timestamp": int(time.time() * 1000),
        }
        if self.is_connected:
            return await self._send(message)
        self._pending_messages.append(message)
        return False
