# src/flowline/core/engagement.py
"""Engagement clock: when is the next good hour to message a store's subscribers.

Pure functions over an EngagementProfile. No I/O, no shared state.

next_optimal_time() is idempotent (applying it to its own result returns
that result) and monotonic (a later earliest_allowed never produces an
earlier answer).
"""

from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

from flowline.contracts.engagement import HOURS_PER_DAY, EngagementProfile

# Send hours used when a caller asks for a clamped best hour
DEFAULT_SEND_WINDOW = (9, 21)
DEFAULT_SEND_HOUR = 11


def _as_aware(moment: datetime) -> datetime:
    # Naive datetimes are UTC throughout the engine
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def next_optimal_time(
    profile: EngagementProfile,
    earliest_allowed: datetime,
    *,
    threshold: float | None = None,
    horizon_days: int = 7,
    send_window: tuple[int, int] | None = None,
) -> datetime:
    """Earliest instant >= earliest_allowed that falls in a high-engagement hour.

    An hour qualifies when its rate is >= threshold (default: the profile's
    maximum rate) and, if send_window=(start, end) is given, start <= hour < end.
    Hours are local to the profile's timezone.

    If earliest_allowed already sits in a qualifying hour it is returned
    unchanged; otherwise the result is the top of the first qualifying hour.
    When nothing qualifies within horizon_days, earliest_allowed is returned.

    Args:
        profile: Store engagement profile
        earliest_allowed: Lower bound for the result (naive = UTC)
        threshold: Minimum rate for a qualifying hour
        horizon_days: How far ahead to search
        send_window: Optional [start, end) local hour restriction

    Returns:
        A datetime in earliest_allowed's timezone
    """
    earliest = _as_aware(earliest_allowed)
    tz = ZoneInfo(profile.timezone)
    target = profile.max_rate if threshold is None else threshold

    def qualifies(hour: int) -> bool:
        if send_window is not None and not (send_window[0] <= hour < send_window[1]):
            return False
        return profile.rate_at(hour) >= target

    local = earliest.astimezone(tz)
    if qualifies(local.hour):
        return earliest

    # Step one real hour at a time from the local hour boundary; whole-hour
    # DST shifts keep every step on a local boundary.
    candidate = local.replace(minute=0, second=0, microsecond=0).astimezone(timezone.utc)
    deadline = earliest + timedelta(days=horizon_days)
    for _ in range(horizon_days * HOURS_PER_DAY + 1):
        candidate += timedelta(hours=1)
        if candidate > deadline:
            break
        if qualifies(candidate.astimezone(tz).hour):
            return candidate.astimezone(earliest.tzinfo)
    return earliest


def profile_from_history(
    store_id: str,
    timestamps: Iterable[datetime],
    timezone_name: str = "UTC",
) -> EngagementProfile:
    """Build a profile from past engagement instants (opens, orders, clicks).

    Each hour's rate is its share of all events, in the store's local time.
    No history gives a flat profile.
    """
    tz = ZoneInfo(timezone_name)
    counts: Counter[int] = Counter(_as_aware(ts).astimezone(tz).hour for ts in timestamps)
    total = sum(counts.values())
    if total == 0:
        return EngagementProfile.flat(store_id, timezone=timezone_name)
    rates = [counts.get(hour, 0) / total for hour in range(HOURS_PER_DAY)]
    return EngagementProfile.from_rates(store_id, rates, timezone=timezone_name)


def best_send_hour(
    profile: EngagementProfile,
    *,
    send_window: tuple[int, int] = DEFAULT_SEND_WINDOW,
    default_hour: int = DEFAULT_SEND_HOUR,
) -> int:
    """Single best local hour, clamped into send_window.

    The most engaged hour wins (earliest on ties). A profile with no signal
    returns default_hour.
    """
    if profile.max_rate <= 0:
        hour = default_hour
    else:
        hour = profile.hourly_rates.index(profile.max_rate)
    start, end = send_window
    if hour < start:
        return start
    if hour >= end:
        return end - 1
    return hour


class ProfileProvider(Protocol):
    """Supplies engagement profiles. Staleness is tolerated."""

    def get_profile(self, store_id: str | None) -> EngagementProfile: ...


class StaticProfileProvider:
    """Profiles held in memory, with a flat fallback for unknown stores."""

    def __init__(
        self,
        profiles: Mapping[str, EngagementProfile] | None = None,
        *,
        default_timezone: str = "UTC",
    ) -> None:
        self._profiles = dict(profiles or {})
        self._default_timezone = default_timezone

    def set_profile(self, profile: EngagementProfile) -> None:
        self._profiles[profile.store_id] = profile

    def get_profile(self, store_id: str | None) -> EngagementProfile:
        if store_id is not None and store_id in self._profiles:
            return self._profiles[store_id]
        return EngagementProfile.flat(store_id or "default", timezone=self._default_timezone)
