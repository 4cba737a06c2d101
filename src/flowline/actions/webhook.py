# src/flowline/actions/webhook.py
"""Built-in webhook executor: POSTs rendered action params as JSON.

Config (settings.actions.executors.webhook):
    url: default endpoint when a node's params don't carry one
    headers: sent with every request
    timeout_seconds: HTTP-level timeout (the engine also enforces its own)

Node params:
    url: optional per-node endpoint
    everything else: sent as the JSON body

Every request carries an ``Idempotency-Key`` header so receivers can drop
retried deliveries.
"""

from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import Field

from flowline.actions.base import BaseActionExecutor, ExecutorConfig
from flowline.contracts.errors import ActionError
from flowline.contracts.results import ActionOutcome

IDEMPOTENCY_HEADER = "Idempotency-Key"

# Statuses worth retrying; other 4xx mean the request itself is wrong
_RETRYABLE_STATUS = frozenset({408, 425, 429})


class WebhookConfig(ExecutorConfig):
    url: str | None = Field(default=None, description="Default endpoint")
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=10.0, gt=0)


class WebhookExecutor(BaseActionExecutor):
    """POST params to an HTTP endpoint."""

    name = "webhook"
    plugin_version = "1.0.0"

    def __init__(
        self, config: dict[str, Any], *, client: httpx.Client | None = None
    ) -> None:
        super().__init__(config)
        self._config = WebhookConfig.from_dict(config)
        self._client = client or httpx.Client(
            timeout=self._config.timeout_seconds,
            headers=self._config.headers,
        )

    def execute(
        self, params: Mapping[str, Any], idempotency_key: str
    ) -> ActionOutcome:
        body = dict(params)
        url = body.pop("url", None) or self._config.url
        if not url:
            raise ActionError(
                "Webhook action has no 'url' param and no default url is configured",
                retryable=False,
            )

        try:
            response = self._client.post(
                url,
                json=body,
                headers={IDEMPOTENCY_HEADER: idempotency_key},
            )
        except httpx.TimeoutException as e:
            raise ActionError(f"Webhook to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ActionError(f"Webhook to {url} failed: {e}") from e

        status = response.status_code
        if status == 409:
            # Receiver already processed this key
            return self.outcome(idempotency_key, {"status_code": status}, duplicate=True)
        if status >= 500 or status in _RETRYABLE_STATUS:
            raise ActionError(f"Webhook to {url} returned HTTP {status}")
        if status >= 400:
            raise ActionError(
                f"Webhook to {url} rejected the request with HTTP {status}",
                retryable=False,
            )
        return self.outcome(idempotency_key, {"status_code": status})

    def close(self) -> None:
        self._client.close()
