"""Avatar REST API - streaming session control endpoints.

Thin async wrapper over the avatar rendering service's control API:
- streaming.new: allocate a remote session
- streaming.start: exchange SDP offer/answer
- streaming.task: fallback audio ingestion
- streaming.control: fallback expression/control ingestion
- streaming.stop: release the remote session

Every non-2xx response raises AvatarAPIError carrying the remote
``message`` verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from talkai.exceptions import AvatarAPIError
from talkai.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AvatarAPIConfig:
    """Configuration for the avatar REST client."""

    api_key: str
    base_url: str = "https://api.heygen.com/v1"
    timeout_s: float = 10.0


def _error_message(response: httpx.Response) -> str:
    """Extract the remote error message from a failed response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        message = body.get("message")
        if not message and isinstance(body.get("error"), dict):
            message = body["error"].get("message")
        if message:
            return str(message)

    return response.text or response.reason_phrase or f"HTTP {response.status_code}"


def _unwrap(body: Any) -> dict[str, Any]:
    """Responses are either bare objects or wrapped as {"data": {...}}."""
    if not isinstance(body, dict):
        return {}
    data = body.get("data")
    if isinstance(data, dict):
        return data
    return body


class HeyGenAPI:
    """Async REST client for the avatar streaming endpoints.

    Usage:
        api = HeyGenAPI(AvatarAPIConfig(api_key="..."))
        session_id = await api.new_session("avatar-1", None, "high")
        answer = await api.start_session(session_id, {"type": "offer", "sdp": "..."})
        await api.stop_session(session_id)
        await api.aclose()
    """

    def __init__(
        self,
        config: AvatarAPIConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Content-Type": "application/json",
                "X-Api-Key": config.api_key,
            },
            timeout=config.timeout_s,
            transport=transport,
        )

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload and return the unwrapped JSON body.

        Raises:
            AvatarAPIError: On non-2xx response
            httpx.HTTPError: On network failure
        """
        response = await self._client.post(f"/{endpoint}", json=payload)

        if not response.is_success:
            raise AvatarAPIError(
                endpoint=endpoint,
                remote_message=_error_message(response),
                status_code=response.status_code,
            )

        if not response.content:
            return {}

        try:
            return _unwrap(response.json())
        except ValueError:
            return {}

    async def new_session(
        self,
        avatar_id: str,
        voice_id: str | None,
        quality: str,
    ) -> str:
        """Allocate a remote streaming session.

        Returns:
            Remote session id
        """
        payload: dict[str, Any] = {"avatar_id": avatar_id, "quality": quality}
        if voice_id:
            payload["voice_id"] = voice_id

        data = await self._post("streaming.new", payload)
        session_id = data.get("session_id")
        if not session_id:
            raise AvatarAPIError(
                endpoint="streaming.new",
                remote_message="Response did not include a session_id",
            )
        return str(session_id)

    async def start_session(self, session_id: str, offer: dict[str, str]) -> dict[str, str]:
        """Send the local SDP offer and return the remote answer.

        Args:
            session_id: Remote session id
            offer: {"type": "offer", "sdp": "..."}

        Returns:
            {"type": "answer", "sdp": "..."}
        """
        data = await self._post("streaming.start", {"session_id": session_id, "sdp": offer})
        answer = data.get("sdp")

        if isinstance(answer, str):
            return {"type": "answer", "sdp": answer}
        if isinstance(answer, dict) and answer.get("sdp"):
            return {"type": answer.get("type", "answer"), "sdp": answer["sdp"]}

        raise AvatarAPIError(
            endpoint="streaming.start",
            remote_message="Response did not include an SDP answer",
        )

    async def send_task(self, session_id: str, audio_b64: str) -> None:
        """Fallback audio ingestion."""
        await self._post("streaming.task", {"session_id": session_id, "audio": audio_b64})

    async def send_control(self, session_id: str, message: dict[str, Any]) -> None:
        """Fallback expression/control ingestion."""
        await self._post("streaming.control", {"session_id": session_id, **message})

    async def stop_session(self, session_id: str) -> None:
        """Release the remote session."""
        await self._post("streaming.stop", {"session_id": session_id})

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
