"""Session State Machines - voice link, avatar link and composed status.

The orchestrator tracks the two stream connections independently and
derives the user-visible session status from both:

Voice link:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (reconnect)
    CONNECTING/CONNECTED/DISCONNECTED -> FAILED

Avatar link:
    PENDING -> CONNECTING -> CONNECTED
    CONNECTING/CONNECTED -> FAILED (voice-only fallback)
    any -> CLOSED

Composed status (compose_status):
    ended                                  -> ENDED
    voice CONNECTED and avatar FAILED      -> DEGRADED
    voice CONNECTED                        -> LIVE
    was live, voice FAILED                 -> ENDED
    was live, voice not connected          -> CONNECTING
    voice CONNECTING                       -> CONNECTING
    otherwise                              -> INITIALIZING
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from talkai.config.constants import RT
from talkai.exceptions import SessionStateError
from talkai.utils.callbacks import invoke_callback


class VoiceState(Enum):
    """Voice stream connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class AvatarLinkState(Enum):
    """Avatar stream state as seen by the orchestrator."""

    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class SessionStatus(Enum):
    """User-visible session status."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    LIVE = "live"
    DEGRADED = "degraded"
    ENDED = "ended"


VOICE_TRANSITIONS: dict[VoiceState, set[VoiceState]] = {
    # FAILED from DISCONNECTED: reconnection exhausted
    VoiceState.DISCONNECTED: {VoiceState.CONNECTING, VoiceState.FAILED},
    VoiceState.CONNECTING: {VoiceState.CONNECTED, VoiceState.FAILED, VoiceState.DISCONNECTED},
    VoiceState.CONNECTED: {VoiceState.DISCONNECTED, VoiceState.FAILED},
    VoiceState.FAILED: {VoiceState.DISCONNECTED},
}

AVATAR_TRANSITIONS: dict[AvatarLinkState, set[AvatarLinkState]] = {
    AvatarLinkState.PENDING: {AvatarLinkState.CONNECTING, AvatarLinkState.CLOSED},
    AvatarLinkState.CONNECTING: {
        AvatarLinkState.CONNECTED,
        AvatarLinkState.FAILED,
        AvatarLinkState.CLOSED,
    },
    AvatarLinkState.CONNECTED: {AvatarLinkState.FAILED, AvatarLinkState.CLOSED},
    # Transport may recover after a drop
    AvatarLinkState.FAILED: {AvatarLinkState.CONNECTED, AvatarLinkState.CLOSED},
    AvatarLinkState.CLOSED: set(),
}


def compose_status(
    voice: VoiceState,
    avatar: AvatarLinkState,
    ended: bool = False,
    was_live: bool = False,
) -> SessionStatus:
    """Derive the session status from both link states.

    ``was_live`` marks a session whose voice stream has connected before.
    Losing voice then means reconnecting; a failed voice link ends it.
    """
    if ended:
        return SessionStatus.ENDED
    if voice is VoiceState.CONNECTED:
        if avatar is AvatarLinkState.FAILED:
            return SessionStatus.DEGRADED
        return SessionStatus.LIVE
    if was_live:
        if voice is VoiceState.FAILED:
            return SessionStatus.ENDED
        return SessionStatus.CONNECTING
    if voice is VoiceState.CONNECTING:
        return SessionStatus.CONNECTING
    return SessionStatus.INITIALIZING


S = TypeVar("S", bound=Enum)


@dataclass
class StateTransition(Generic[S]):
    """Record of a state transition."""

    old_state: S
    new_state: S
    t_ms: int
    reason: str
    metadata: dict = field(default_factory=dict)


StateChangeCallback = Callable[[StateTransition], Any]


class LinkStateMachine(Generic[S]):
    """Validated FSM over one of the link state enums.

    Usage:
        fsm = LinkStateMachine("voice", VoiceState.DISCONNECTED, VOICE_TRANSITIONS)
        fsm.on_state_change(handle_change)
        await fsm.transition_to(VoiceState.CONNECTING, "initialize")
    """

    def __init__(
        self,
        name: str,
        initial: S,
        transitions: dict[S, set[S]],
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._state = initial
        self._transitions = transitions
        self._session_id = session_id
        self._clock = clock

        self._on_change_callbacks: list[StateChangeCallback] = []
        self._history: list[StateTransition] = []
        self._max_history = RT.STATE_HISTORY_LIMIT

    @property
    def state(self) -> S:
        return self._state

    @property
    def name(self) -> str:
        return self._name

    @property
    def history(self) -> list[StateTransition]:
        """Transition history (most recent last)."""
        return self._history.copy()

    def can_transition(self, new_state: S) -> bool:
        return new_state in self._transitions.get(self._state, set())

    def on_state_change(self, callback: StateChangeCallback) -> None:
        """Register callback for any state change."""
        self._on_change_callbacks.append(callback)

    async def transition_to(
        self,
        new_state: S,
        reason: str = "",
        metadata: dict | None = None,
    ) -> StateTransition | None:
        """Transition to a new state.

        Returns:
            StateTransition, or None if already in the target state

        Raises:
            SessionStateError: If the transition is not allowed
        """
        old_state = self._state
        if new_state is old_state:
            return None

        if not self.can_transition(new_state):
            raise SessionStateError(
                f"Invalid {self._name} transition: {old_state.value} -> {new_state.value}",
                session_id=self._session_id,
                current_state=old_state.value,
                target_state=new_state.value,
            )

        transition = StateTransition(
            old_state=old_state,
            new_state=new_state,
            t_ms=int(self._clock() * 1000),
            reason=reason,
            metadata=metadata or {},
        )

        self._state = new_state

        self._history.append(transition)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        for callback in self._on_change_callbacks:
            await invoke_callback(callback, transition, name=f"{self._name}_state_change")

        return transition


def create_voice_state_machine(session_id: str | None = None) -> LinkStateMachine[VoiceState]:
    return LinkStateMachine("voice", VoiceState.DISCONNECTED, VOICE_TRANSITIONS, session_id)


def create_avatar_state_machine(session_id: str | None = None) -> LinkStateMachine[AvatarLinkState]:
    return LinkStateMachine("avatar", AvatarLinkState.PENDING, AVATAR_TRANSITIONS, session_id)
