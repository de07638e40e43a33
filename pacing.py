#!/usr/bin/env python3
"""
⏱️ Replay Pacing
================
Decides how long to wait between two consecutive dispatches.

Modes:
- literal: keep the recorded gaps, bursts stay bursts
- scale:   spread same-second bursts evenly over their one-second window
- skip:    no waiting at all (maximum throughput, no fidelity)

All delays are in milliseconds and already divided by the speed ratio.
"""

from collections import Counter
from enum import Enum
from typing import Dict, List, Optional, Sequence

from access_log import ReplayEvent

# Log timestamps have one-second resolution
TIMESTAMP_WINDOW_MS = 1000


class PacingMode(Enum):
    LITERAL = "literal"
    SCALE = "scale"
    SKIP = "skip"


def count_repeats(events: Sequence[ReplayEvent]) -> Dict[int, int]:
    """Number of events sharing each distinct timestamp."""
    return dict(Counter(event.timestamp_ms for event in events))


class Pacer:
    """
    Computes the wait after dispatching event ``i`` and before ``i + 1``.

    Scale mode needs per-second counts from the whole timeline, so the
    pacer is built once from the complete event list.
    """

    def __init__(
        self,
        events: Sequence[ReplayEvent],
        ratio: float = 1.0,
        mode: PacingMode = PacingMode.LITERAL,
    ):
        if ratio <= 0:
            raise ValueError(f"ratio must be positive, got {ratio}")
        self.events = events
        self.ratio = ratio
        self.mode = mode
        self.seconds_repeats = count_repeats(events) if mode == PacingMode.SCALE else {}

    def delay_after(self, index: int) -> Optional[float]:
        """
        Milliseconds to wait after event ``index``.

        Returns None after the last event. Negative gaps (out of order
        input) are clamped to zero.
        """
        if index >= len(self.events) - 1:
            return None
        if self.mode == PacingMode.SKIP:
            return 0.0

        current = self.events[index].timestamp_ms
        following = self.events[index + 1].timestamp_ms

        if self.mode == PacingMode.SCALE:
            spread = round(TIMESTAMP_WINDOW_MS / self.seconds_repeats[current])
            extra = 0 if current == following else following - current - TIMESTAMP_WINDOW_MS
            delay = (spread + extra) / self.ratio
        elif current == following:
            delay = 0.0
        else:
            delay = (following - current) / self.ratio

        return max(0.0, delay)

    def delays(self) -> List[float]:
        """Every inter-dispatch delay, one fewer than there are events."""
        return [self.delay_after(i) for i in range(len(self.events) - 1)]

    @property
    def planned_sleep_ms(self) -> float:
        return sum(self.delays())
