"""TalkAI Avatar - Real-time voice + video-avatar session orchestration."""

__version__ = "1.0.0"

# Export exception hierarchy for easy importing
from talkai.exceptions import (
    TalkAIError,
    SessionError,
    SessionStateError,
    VoiceError,
    VoiceConnectionError,
    CredentialError,
    AvatarError,
    AvatarAPIError,
    AvatarConnectionError,
    PersistenceError,
)

__all__ = [
    "__version__",
    # Base
    "TalkAIError",
    # Session
    "SessionError",
    "SessionStateError",
    # Voice
    "VoiceError",
    "VoiceConnectionError",
    "CredentialError",
    # Avatar
    "AvatarError",
    "AvatarAPIError",
    "AvatarConnectionError",
    # Persistence
    "PersistenceError",
]
