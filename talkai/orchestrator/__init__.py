"""Orchestrator module - session coordination and state.

Provides:
- SessionOrchestrator: voice + avatar session coordinator
- SessionManager: multi-session management
- LinkStateMachine / compose_status: link FSMs and composed status
- SessionTimer: pause-aware session duration
"""

from talkai.orchestrator.session import SessionManager, SessionOrchestrator, SessionRecord
from talkai.orchestrator.state_machine import (
    AvatarLinkState,
    LinkStateMachine,
    SessionStatus,
    StateTransition,
    VoiceState,
    compose_status,
)
from talkai.orchestrator.timer import SessionTimer

__all__ = [
    # Sessions
    "SessionManager",
    "SessionOrchestrator",
    "SessionRecord",
    # State
    "AvatarLinkState",
    "LinkStateMachine",
    "SessionStatus",
    "StateTransition",
    "VoiceState",
    "compose_status",
    # Timer
    "SessionTimer",
]
