# src/flowline/actions/__init__.py
"""Action executors: the boundary between the engine and delivery providers.

- Protocols: Type contract for executor implementations
- Base classes: Convenience base class and typed config
- Registry: pluggy-based discovery and lookup by action_type
- Hookspecs: pluggy hook definitions
"""

from flowline.actions.base import ActionConfigError, BaseActionExecutor, ExecutorConfig
from flowline.actions.hookspecs import hookimpl, hookspec
from flowline.actions.manager import ActionRegistry
from flowline.actions.protocols import ActionExecutorProtocol

__all__ = [
    "ActionConfigError",
    "ActionExecutorProtocol",
    "ActionRegistry",
    "BaseActionExecutor",
    "ExecutorConfig",
    "hookimpl",
    "hookspec",
]
