"""Avatar module - streaming avatar transport and expressions.

Provides:
- HeyGenClient: WebRTC avatar session client
- HeyGenAPI: REST control API wrapper
- AudioQueue: bounded lip-sync frame queue
- map_emotion_to_expression: emotion -> expression mapping
"""

from talkai.avatar.api import AvatarAPIConfig, HeyGenAPI
from talkai.avatar.audio_queue import AudioQueue, OverflowPolicy
from talkai.avatar.client import (
    AvatarState,
    HeyGenClient,
    HeyGenConfig,
    create_heygen_client,
)
from talkai.avatar.expression import (
    EMOTION_EXPRESSION_MAP,
    NEUTRAL_EXPRESSION,
    ExpressionCommand,
    interpolate_intensity,
    map_emotion_to_expression,
)

__all__ = [
    # Client
    "AvatarState",
    "HeyGenClient",
    "HeyGenConfig",
    "create_heygen_client",
    # REST
    "AvatarAPIConfig",
    "HeyGenAPI",
    # Audio
    "AudioQueue",
    "OverflowPolicy",
    # Expressions
    "EMOTION_EXPRESSION_MAP",
    "NEUTRAL_EXPRESSION",
    "ExpressionCommand",
    "interpolate_intensity",
    "map_emotion_to_expression",
]
