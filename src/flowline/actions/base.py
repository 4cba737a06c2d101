# src/flowline/actions/base.py
"""Base classes for action executors and their typed configuration.

Executors can subclass these for convenience, or implement
ActionExecutorProtocol directly.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Self

from pydantic import BaseModel, ValidationError

from flowline.contracts.results import ActionOutcome


class ActionConfigError(Exception):
    """Raised when executor configuration is invalid."""


class ExecutorConfig(BaseModel):
    """Base class for typed executor configurations.

    Example usage:
        class SmsConfig(ExecutorConfig):
            sender: str

        cfg = SmsConfig.from_dict(config)
    """

    model_config = {"extra": "forbid"}  # Reject unknown fields

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> Self:
        """Create config from dict with clear error on validation failure.

        Raises:
            ActionConfigError: If configuration is invalid.
        """
        try:
            return cls(**config)
        except ValidationError as e:
            raise ActionConfigError(
                f"Invalid configuration for {cls.__name__}: {e}"
            ) from e


class BaseActionExecutor(ABC):
    """Base class for action executors.

    Subclass and implement execute().

    Example:
        class LogExecutor(BaseActionExecutor):
            name = "log"

            def execute(self, params, idempotency_key) -> ActionOutcome:
                print(params)
                return self.outcome(idempotency_key)
    """

    name: str
    plugin_version: str = "0.0.0"

    def __init__(self, config: dict[str, Any]) -> None:
        """Initialize with configuration."""
        self.config = config

    @abstractmethod
    def execute(
        self, params: Mapping[str, Any], idempotency_key: str
    ) -> ActionOutcome:
        """Perform the action; raise ActionError on failure."""
        ...

    def outcome(
        self,
        idempotency_key: str,
        detail: dict[str, Any] | None = None,
        *,
        duplicate: bool = False,
    ) -> ActionOutcome:
        return ActionOutcome(
            action_type=self.name,
            idempotency_key=idempotency_key,
            detail=detail or {},
            duplicate=duplicate,
        )

    def close(self) -> None:  # noqa: B027
        """Release resources. Override if the executor holds clients."""
