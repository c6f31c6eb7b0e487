"""Voice stream message types.

Parsed forms of the chat messages emitted by the voice/emotion service.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from talkai.config.constants import RT

CHAT_MESSAGE_TYPES = frozenset({"user_message", "assistant_message"})


@dataclass(frozen=True)
class EmotionScore:
    """A named emotion with its prosody confidence."""

    name: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "score": self.score}


@dataclass
class TranscriptMessage:
    """One user or assistant utterance."""

    type: str
    role: str
    content: str
    emotions: list[EmotionScore] = field(default_factory=list)
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "role": self.role,
            "content": self.content,
            "emotions": [e.to_dict() for e in self.emotions],
            "timestamp": self.timestamp,
        }


def parse_emotions(
    scores: dict[str, float] | None,
    top_n: int = RT.EMOTION_TOP_N,
) -> list[EmotionScore]:
    """Top-N emotions from prosody scores, highest first."""
    if not scores:
        return []
    ranked = sorted(
        (EmotionScore(name=name, score=float(score)) for name, score in scores.items()),
        key=lambda e: e.score,
        reverse=True,
    )
    return ranked[:top_n]


def parse_chat_message(data: dict[str, Any]) -> TranscriptMessage:
    """Build a TranscriptMessage from a user_message/assistant_message payload.

    Content comes from ``message.content`` or a top-level ``content``; the
    role defaults from the message type when absent.
    """
    msg_type = data["type"]
    inner = data.get("message") or {}
    role = data.get("role") or inner.get("role")
    if not role:
        role = "user" if msg_type == "user_message" else "assistant"

    prosody = (data.get("models") or {}).get("prosody") or {}

    return TranscriptMessage(
        type=msg_type,
        role=role,
        content=inner.get("content") or data.get("content") or "",
        emotions=parse_emotions(prosody.get("scores")),
        timestamp=int(data.get("timestamp") or time.time() * 1000),
    )
