# taxflow/store/retry.py
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from taxflow.config import Settings


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff seeded from the attempt count:
        delay = min(base * factor ** (attempts - 1), max_delay) + jitter
    Jitter is additive and non-negative, so the first retry is never earlier than `base`.
    """
    base_seconds: float = 300.0
    factor: float = 2.0
    max_seconds: float = 6 * 3600.0
    jitter_ratio: float = 0.2

    @classmethod
    def from_settings(cls, cfg: Settings) -> "BackoffPolicy":
        return cls(
            base_seconds=cfg.RETRY_BASE_SECONDS,
            factor=cfg.RETRY_FACTOR,
            max_seconds=cfg.RETRY_MAX_SECONDS,
            jitter_ratio=cfg.RETRY_JITTER_RATIO,
        )

    def delay_for(self, attempts: int, rng: Optional[random.Random] = None) -> float:
        # exponent clamped: attempts keep growing across dead-letter retries
        n = min(max(int(attempts), 1), 65)
        delay = min(self.base_seconds * (self.factor ** (n - 1)), self.max_seconds)
        if self.jitter_ratio > 0:
            delay += (rng or random).uniform(0, delay * self.jitter_ratio)
        # Never zero: a re-armed job must be strictly in the future
        return max(delay, 0.001)

    def next_eligible_at(self, attempts: int, now: datetime, rng: Optional[random.Random] = None) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempts, rng))
