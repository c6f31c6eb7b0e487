"""Voice module - voice/emotion stream client and access tokens.

Provides:
- HumeClient: WebSocket voice chat with emotion scores
- fetch_access_token: client-credentials token exchange
- TranscriptMessage / EmotionScore: parsed message types
"""

from talkai.voice.hume import HumeClient, HumeConfig
from talkai.voice.messages import (
    EmotionScore,
    TranscriptMessage,
    parse_chat_message,
    parse_emotions,
)
from talkai.voice.token import fetch_access_token, fetch_access_token_from_settings

__all__ = [
    "EmotionScore",
    "HumeClient",
    "HumeConfig",
    "TranscriptMessage",
    "fetch_access_token",
    "fetch_access_token_from_settings",
    "parse_chat_message",
    "parse_emotions",
]
