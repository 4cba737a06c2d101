# src/flowline/actions/protocols.py
"""Action executor protocol.

Executors perform the side effects of action nodes (send an email, post a
webhook, tag a customer). The engine only knows this interface; delivery
providers live behind it.

They're used for type checking, not runtime enforcement (that's pluggy's job).
"""

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from flowline.contracts.results import ActionOutcome


@runtime_checkable
class ActionExecutorProtocol(Protocol):
    """Protocol for action executors.

    Lifecycle:
    1. __init__(config) - Instantiated once per registry
    2. execute(params, idempotency_key) - Called per entry attempt, possibly
       from several worker threads at once
    3. close() - Release clients

    Idempotency: the same key is passed when an attempt is retried after a
    crash or recovery. An executor that can deduplicate (provider
    idempotency header, own dedup table) should; one that can't gives
    at-least-once delivery.

    Example:
        class SlackExecutor:
            name = "slack"

            def execute(self, params, idempotency_key) -> ActionOutcome:
                post(params["channel"], params["text"])
                return ActionOutcome(action_type=self.name, idempotency_key=idempotency_key)
    """

    name: str

    def __init__(self, config: dict[str, Any]) -> None:
        """Initialize with configuration."""
        ...

    def execute(
        self, params: Mapping[str, Any], idempotency_key: str
    ) -> "ActionOutcome":
        """Perform the action.

        Raises:
            ActionError: On failure (retryable unless marked otherwise)
        """
        ...

    def close(self) -> None:
        """Clean up resources."""
        ...
