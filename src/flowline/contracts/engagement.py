# src/flowline/contracts/engagement.py
"""Engagement profile contract.

A profile is owned by an external analytics collaborator; the engine only
reads it. Rates are indexed by local hour of day in the store's timezone.
"""

import math
from dataclasses import dataclass
from typing import Sequence

HOURS_PER_DAY = 24


@dataclass(frozen=True)
class EngagementProfile:
    """Per-store hourly engagement rates.

    Frozen so it can be shared across scheduler workers without locking.
    """

    store_id: str
    hourly_rates: tuple[float, ...]
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if len(self.hourly_rates) != HOURS_PER_DAY:
            raise ValueError(
                f"EngagementProfile for '{self.store_id}' needs {HOURS_PER_DAY} "
                f"hourly rates, got {len(self.hourly_rates)}"
            )
        for hour, rate in enumerate(self.hourly_rates):
            if math.isnan(rate) or math.isinf(rate) or rate < 0:
                raise ValueError(
                    f"EngagementProfile for '{self.store_id}' has invalid rate "
                    f"{rate!r} at hour {hour}"
                )

    @classmethod
    def from_rates(
        cls, store_id: str, rates: Sequence[float], timezone: str = "UTC"
    ) -> "EngagementProfile":
        return cls(
            store_id=store_id,
            hourly_rates=tuple(float(r) for r in rates),
            timezone=timezone,
        )

    @classmethod
    def flat(cls, store_id: str, timezone: str = "UTC") -> "EngagementProfile":
        """Profile with no signal; the clock falls back to the earliest time."""
        return cls(store_id=store_id, hourly_rates=(0.0,) * HOURS_PER_DAY, timezone=timezone)

    @property
    def max_rate(self) -> float:
        return max(self.hourly_rates)

    def rate_at(self, hour: int) -> float:
        return self.hourly_rates[hour]
