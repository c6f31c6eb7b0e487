"""Bounded outbound audio queue for lip-sync frames.

Frames produced while the avatar transport is not connected are held here
and flushed in FIFO order once it is. The queue is bounded; on overflow it
either evicts the oldest frame or rejects the incoming one.
"""

from __future__ import annotations

from collections import deque
from enum import Enum


class OverflowPolicy(Enum):
    """What to drop when the queue is full."""

    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


class AudioQueue:
    """FIFO of audio frames with a fixed capacity.

    Usage:
        queue = AudioQueue(max_frames=256, policy=OverflowPolicy.DROP_OLDEST)

        dropped = queue.put(frame)
        while (frame := queue.pop()) is not None:
            await send(frame)
    """

    def __init__(
        self,
        max_frames: int,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ) -> None:
        if max_frames < 1:
            raise ValueError("max_frames must be >= 1")
        self._max_frames = max_frames
        self._policy = policy
        self._frames: deque[bytes] = deque()
        self._dropped = 0

    def put(self, frame: bytes) -> bool:
        """Enqueue a frame.

        Returns:
            True if a frame was dropped to honor the bound
        """
        if len(self._frames) < self._max_frames:
            self._frames.append(frame)
            return False

        self._dropped += 1
        if self._policy is OverflowPolicy.DROP_OLDEST:
            self._frames.popleft()
            self._frames.append(frame)
        return True

    def pop(self) -> bytes | None:
        """Dequeue the oldest frame, or None if empty."""
        if not self._frames:
            return None
        return self._frames.popleft()

    def clear(self) -> int:
        """Discard all frames.

        Returns:
            Number of frames discarded
        """
        count = len(self._frames)
        self._frames.clear()
        return count

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def max_frames(self) -> int:
        return self._max_frames

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    @property
    def dropped(self) -> int:
        """Total frames dropped by overflow since creation."""
        return self._dropped
