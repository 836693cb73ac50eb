"""Delays between tracker announce retries."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from btcore.models import NetworkConfig


@dataclass
class ExponentialBackoff:
    """Growing retry delays with proportional jitter.

    ``max_delay`` bounds every delay, jitter included.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: NetworkConfig) -> ExponentialBackoff:
        """Build the tracker retry policy from network settings."""
        return cls(base_delay=config.tracker_backoff_base, max_delay=config.tracker_backoff_max)

    def next_delay(self, retries: int) -> float:
        """Seconds to wait before retry number ``retries`` (0-based)."""
        delay = min(self.base_delay * self.multiplier ** max(0, retries), self.max_delay)
        if self.jitter <= 0 or delay == 0:
            return delay
        spread = delay * self.jitter
        delay += random.uniform(-spread, spread)  # noqa: S311
        return min(max(0.0, delay), self.max_delay)
