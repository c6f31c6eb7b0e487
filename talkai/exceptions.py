"""TalkAI Exception Hierarchy.

Provides structured exception classes for the session orchestration layer.

Hierarchy:
    TalkAIError (base)
    ├── SessionError
    │   └── SessionStateError
    ├── VoiceError
    │   ├── VoiceConnectionError
    │   └── CredentialError
    ├── AvatarError
    │   ├── AvatarConnectionError
    │   └── AvatarAPIError
    └── PersistenceError
"""

from typing import Any


class TalkAIError(Exception):
    """Base exception for all TalkAI errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Session Errors
# =============================================================================


class SessionError(TalkAIError):
    """Base exception for session-related errors."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        details = details or {}
        if session_id:
            details["session_id"] = session_id
        super().__init__(message, details, recoverable)
        self.session_id = session_id


class SessionStateError(SessionError):
    """Raised for invalid session or client state transitions."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        current_state: str | None = None,
        target_state: str | None = None,
    ) -> None:
        details = {}
        if current_state:
            details["current_state"] = current_state
        if target_state:
            details["target_state"] = target_state
        super().__init__(message, session_id, details, recoverable=False)


# =============================================================================
# Voice Stream Errors
# =============================================================================


class VoiceError(TalkAIError):
    """Base exception for voice/emotion stream errors."""

    pass


class VoiceConnectionError(VoiceError):
    """Raised when the voice stream connection fails."""

    def __init__(self, service: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to connect to voice service {service}: {reason}",
            details={"service": service, "reason": reason},
            recoverable=True,  # User can retry the session
        )


class CredentialError(VoiceError):
    """Raised when the voice stream access credential cannot be obtained."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        details: dict[str, Any] = {"reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message=f"Failed to fetch voice access token: {reason}",
            details=details,
            recoverable=True,
        )


# =============================================================================
# Avatar Errors
# =============================================================================


class AvatarError(TalkAIError):
    """Base exception for avatar rendering service errors."""

    pass


class AvatarAPIError(AvatarError):
    """Raised when the avatar REST API returns a non-2xx response.

    The remote-provided message is kept verbatim in ``remote_message``.
    """

    def __init__(
        self,
        endpoint: str,
        remote_message: str,
        status_code: int | None = None,
    ) -> None:
        details: dict[str, Any] = {"endpoint": endpoint}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message=remote_message,
            details=details,
            recoverable=False,
        )
        self.endpoint = endpoint
        self.remote_message = remote_message
        self.status_code = status_code


class AvatarConnectionError(AvatarError):
    """Raised when the avatar client fails to connect.

    Attributes:
        stage: Connection stage that failed (create_session, negotiate,
            transport, aborted)
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        stage: str,
        reason: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            message=f"Avatar connection failed during {stage}: {reason}",
            details={"stage": stage, "reason": reason},
            recoverable=True,  # A fresh client can be created
        )
        self.stage = stage
        self.cause = cause


# =============================================================================
# Persistence Errors
# =============================================================================


class PersistenceError(TalkAIError):
    """Raised when the history store rejects a write or read."""

    def __init__(self, table: str, reason: str) -> None:
        super().__init__(
            message=f"History store operation on {table} failed: {reason}",
            details={"table": table, "reason": reason},
            recoverable=True,
        )

