"""Expression Mapper - emotion scores to avatar expression commands.

Converts a voice-stream emotion label and confidence score into the
smaller expression vocabulary understood by the avatar renderer.

Unknown labels map to "neutral"; this is the fallback, never an error.
"""

from __future__ import annotations

from dataclasses import dataclass

from talkai.config.constants import RT

NEUTRAL_EXPRESSION = "neutral"

# Voice-stream emotion label (lowercase) -> avatar expression
EMOTION_EXPRESSION_MAP: dict[str, str] = {
    "joy": "happy",
    "happiness": "happy",
    "excitement": "excited",
    "contentment": "content",
    "sadness": "sad",
    "anger": "angry",
    "fear": "worried",
    "surprise": "surprised",
    "anxiety": "worried",
    "calmness": "calm",
    "confidence": "confident",
}


@dataclass(frozen=True)
class ExpressionCommand:
    """A named avatar pose with intensity in [0, 1] and a duration."""

    emotion: str
    intensity: float
    duration_ms: int = RT.EXPRESSION_DEFAULT_DURATION_MS

    def to_message(self, timestamp: int) -> dict:
        """Data-channel wire form."""
        return {
            "type": "expression",
            "emotion": self.emotion,
            "intensity": self.intensity,
            "duration": self.duration_ms,
            "timestamp": timestamp,
        }

    @classmethod
    def from_message(cls, data: dict) -> "ExpressionCommand":
        """Create from a data-channel message."""
        return cls(
            emotion=data["emotion"],
            intensity=data["intensity"],
            duration_ms=data.get("duration", RT.EXPRESSION_DEFAULT_DURATION_MS),
        )


def clamp_intensity(value: float) -> float:
    """Clamp an intensity to the renderer's valid range."""
    return max(0.0, min(1.0, value))


def map_emotion_to_expression(
    emotion: str,
    score: float,
    duration_ms: int = RT.EXPRESSION_DEFAULT_DURATION_MS,
) -> ExpressionCommand:
    """Map an emotion label and score to an avatar expression.

    Args:
        emotion: Emotion label from the voice stream (case-insensitive)
        score: Emotion confidence score
        duration_ms: Expression hold duration

    Returns:
        ExpressionCommand with intensity = min(1, score * 1.5)
    """
    expression = EMOTION_EXPRESSION_MAP.get(emotion.lower(), NEUTRAL_EXPRESSION)
    return ExpressionCommand(
        emotion=expression,
        intensity=clamp_intensity(min(1.0, score * RT.EXPRESSION_INTENSITY_GAIN)),
        duration_ms=duration_ms,
    )


def interpolate_intensity(start: float, end: float, alpha: float) -> float:
    """Linear interpolation between two intensities."""
    return start + (end - start) * alpha
