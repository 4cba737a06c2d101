# src/flowline/engine/retry.py
"""Durable retry policy for failed node evaluations.

Retries are not loops in a worker: a failed entry goes back to the ledger
as WaitingDelay with a backoff wake time, and a later tick retries it.
attempt_count on the entry is the number of failed attempts so far.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from flowline.contracts.enums import BackoffStrategy
from flowline.contracts.errors import ExecutionError
from flowline.core.config import RetrySettings
from flowline.core.graph import RetryPolicy


@dataclass(frozen=True)
class RetryConfig:
    """Retry limits and backoff shape.

    max_attempts is the total number of attempts an entry gets at a node,
    so max_attempts=3 means two retries after the first failure.
    """

    max_attempts: int = 3
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = 60.0
    max_delay: float = 3600.0
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay <= 0 or self.max_delay < self.base_delay:
            raise ValueError(
                f"Need 0 < base_delay <= max_delay, got {self.base_delay}/{self.max_delay}"
            )

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            strategy=settings.strategy,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            exponential_base=settings.exponential_base,
        )

    def with_overrides(self, policy: RetryPolicy | None) -> "RetryConfig":
        """This config with an action node's overrides applied."""
        if policy is None:
            return self
        base_delay = self.base_delay
        max_delay = self.max_delay
        if policy.delay_seconds is not None:
            base_delay = policy.delay_seconds
            max_delay = max(max_delay, base_delay)
        if policy.max_delay_seconds is not None:
            max_delay = policy.max_delay_seconds
            base_delay = min(base_delay, max_delay)
        return replace(
            self,
            max_attempts=policy.max_attempts or self.max_attempts,
            strategy=policy.strategy or self.strategy,
            base_delay=base_delay,
            max_delay=max_delay,
        )


@dataclass(frozen=True)
class RetryDecision:
    """What to do with an entry whose evaluation just failed."""

    retry: bool
    attempt: int  # Failed attempts including this one
    wake_at: datetime | None = None


class RetryManager:
    """Turns a failure into a retry-with-backoff or a terminal failure.

    Usage:
        retry = RetryManager(RetryConfig(max_attempts=3))
        decision = retry.decide(error, entry.attempt_count, now)
        if decision.retry:
            # WaitingDelay until decision.wake_at, attempt_count = decision.attempt
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def backoff(self, attempt: int, config: RetryConfig | None = None) -> timedelta:
        """Delay before retry number ``attempt`` (1 = first retry), capped at max_delay."""
        attempt = max(attempt, 1)
        cfg = config or self._config
        if cfg.strategy == BackoffStrategy.LINEAR:
            seconds = cfg.base_delay * attempt
        else:
            # Cap the exponent so huge attempt counts can't overflow a float
            exponent = min(attempt - 1, 64)
            seconds = cfg.base_delay * (cfg.exponential_base**exponent)
        return timedelta(seconds=min(seconds, cfg.max_delay))

    def decide(
        self,
        error: BaseException,
        previous_attempts: int,
        now: datetime,
        config: RetryConfig | None = None,
    ) -> RetryDecision:
        """Decide between retry and Failed.

        ExecutionErrors carry their own retryable flag (UnresolvedBranch,
        UnknownActionType and TemplateError are never retried). Any other
        exception is treated as transient, e.g. a profile lookup hitting a
        network error, and retried up to max_attempts.

        Args:
            config: Effective config for this node, defaults to the manager's
        """
        cfg = config or self._config
        attempt = previous_attempts + 1
        retryable = error.retryable if isinstance(error, ExecutionError) else True
        if retryable and attempt < cfg.max_attempts:
            return RetryDecision(
                retry=True, attempt=attempt, wake_at=now + self.backoff(attempt, cfg)
            )
        return RetryDecision(retry=False, attempt=attempt)
