"""Realtime Constants - Protocol timings and fixed parameters.

Values shared by the avatar client, the voice stream client and the
session orchestrator. All timing values in milliseconds unless noted.
"""

from dataclasses import dataclass, field
from typing import Final


@dataclass(frozen=True)
class RealtimeConstants:
    """Immutable realtime session parameters."""

    # WebRTC
    STUN_SERVERS: Final[tuple[str, ...]] = field(default=(
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ))
    CONTROL_CHANNEL_LABEL: Final[str] = "control"
    AVATAR_CONNECT_TIMEOUT_S: Final[float] = 30.0  # Wait for transport "connected"

    # Audio relay
    AUDIO_DRAIN_DELAY_MS: Final[int] = 50  # Pause between queued frame sends
    AUDIO_QUEUE_MAX_FRAMES: Final[int] = 256  # Outbound queue bound
    VOICE_SAMPLE_RATE: Final[int] = 16000  # Capture sample rate

    # Expressions
    EXPRESSION_INTENSITY_GAIN: Final[float] = 1.5  # Makes subtle emotions visible
    EXPRESSION_DEFAULT_DURATION_MS: Final[int] = 2000
    EXPRESSION_TRANSITION_MS: Final[int] = 1000
    EXPRESSION_TRANSITION_STEPS: Final[int] = 20

    # Emotion stream
    EMOTION_THROTTLE_MS: Final[int] = 500  # Max one expression update per window
    EMOTION_PERSIST_DEBOUNCE_MS: Final[int] = 2000
    EMOTION_TOP_N: Final[int] = 5

    # Voice reconnection (linear backoff: delay * attempt)
    VOICE_MAX_RECONNECT_ATTEMPTS: Final[int] = 5
    VOICE_RECONNECT_DELAY_MS: Final[int] = 1000

    # Session timer
    TIMER_TICK_MS: Final[int] = 1000

    # Session defaults
    MAX_CONCURRENT_SESSIONS: Final[int] = 50
    STATE_HISTORY_LIMIT: Final[int] = 100


# Singleton instance for import convenience
RT = RealtimeConstants()
