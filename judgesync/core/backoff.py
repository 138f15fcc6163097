from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with symmetric jitter.

    ``delay(attempt)`` returns ``base * 2**attempt`` capped at ``maximum`` and then
    spread by +/- ``jitter_ratio``. The job queue and the API client each own an
    instance with their own scale (hours vs seconds).
    """

    base_seconds: float
    max_seconds: float
    jitter_ratio: float = 0.25
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if self.jitter_ratio < 0.0 or self.jitter_ratio >= 1.0:
            raise ValueError("jitter_ratio must be in [0.0, 1.0)")

    def raw_delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # Bound the exponent so huge attempt counts cannot overflow the float.
        exponent = min(attempt, 62)
        return min(self.base_seconds * (2**exponent), self.max_seconds)

    def delay(self, attempt: int) -> float:
        capped = self.raw_delay(attempt)
        if self.jitter_ratio == 0.0:
            return capped
        spread = capped * self.jitter_ratio
        return max(capped + self.rng.uniform(-spread, spread), 0.0)
