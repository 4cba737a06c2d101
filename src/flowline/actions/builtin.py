# src/flowline/actions/builtin.py
"""Hook implementation for built-in action executors."""

from typing import Any

from flowline.actions.hookspecs import hookimpl


class FlowlineBuiltinActions:
    """Hook implementer for built-in action executors."""

    @hookimpl
    def flowline_get_action_executors(self) -> list[type[Any]]:
        """Return built-in action executor classes."""
        from flowline.actions.webhook import WebhookExecutor

        return [WebhookExecutor]


# Singleton instance for registration
builtin_actions = FlowlineBuiltinActions()
