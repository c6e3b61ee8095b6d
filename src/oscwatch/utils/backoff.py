from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Iterator


def next_backoff(prev: float, cap: float) -> float:
    return min(prev * 2.0, cap)


def jitter(v: float, *, ratio: float = 0.2) -> float:
    """Scale v by a random factor in [1 - ratio, 1 + ratio]."""
    return v * (1.0 - ratio + 2.0 * ratio * random.random())


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Capped exponential backoff between delivery attempts."""
    attempts: int = 3
    initial_s: float = 0.5
    max_s: float = 8.0
    jitter_ratio: float = 0.2

    def delays(self) -> Iterator[float]:
        """The attempts - 1 jittered pauses taken between attempts."""
        v = self.initial_s
        for _ in range(max(0, self.attempts - 1)):
            yield jitter(v, ratio=self.jitter_ratio)
            v = next_backoff(v, self.max_s)
