"""Retry budget and backoff for generation attempts."""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field

from genrelay.config import RetrySettings

_DEFAULT_BASE_SECONDS = 2.0


@dataclass(slots=True)
class RetryPolicy:
    """Per-kind attempt cap with exponential backoff and full jitter."""

    max_attempts: Mapping[str, int] = field(
        default_factory=lambda: {"image": 3, "video": 2, "chat": 5},
    )
    base_seconds: Mapping[str, float] = field(
        default_factory=lambda: {"image": 2.0, "video": 5.0, "chat": 1.0},
    )
    max_seconds: float = 60.0
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=dict(settings.max_attempts),
            base_seconds=dict(settings.base_seconds),
            max_seconds=settings.max_seconds,
        )

    def attempts_for(self, kind: str) -> int:
        return max(1, int(self.max_attempts.get(kind, 3)))

    def compute_delay(self, *, kind: str, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based), drawn from [0, cap]."""

        base = float(self.base_seconds.get(kind, _DEFAULT_BASE_SECONDS))
        max_delay = min(self.max_seconds, base * (2 ** max(retry_number - 1, 0)))
        return self.rng.uniform(0, max_delay)
