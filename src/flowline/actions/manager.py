# src/flowline/actions/manager.py
"""Action registry: executor discovery, registration, and lookup.

Uses pluggy for hook-based registration of executor classes. Executors are
instantiated lazily, once, with their options from ActionSettings, and are
shared by every worker thread.
"""

import threading
from typing import Any

import pluggy

from flowline.actions.hookspecs import PROJECT_NAME, FlowlineActionSpec
from flowline.actions.protocols import ActionExecutorProtocol
from flowline.contracts.errors import UnknownActionType
from flowline.core.config import ActionSettings


class ActionRegistry:
    """Maps action_type names to executors.

    Usage:
        registry = ActionRegistry(settings.actions)
        registry.register_builtin_actions()
        registry.register(MyPlugin())           # pluggy hook implementer
        registry.add_executor(FakeExecutor())   # ready-made instance

        executor = registry.get_executor("webhook")
    """

    def __init__(self, settings: ActionSettings | None = None) -> None:
        self._settings = settings or ActionSettings()
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(FlowlineActionSpec)

        # Caches - map name to executor class/instance for duplicate detection
        self._classes: dict[str, type[ActionExecutorProtocol]] = {}
        self._instances: dict[str, ActionExecutorProtocol] = {}
        self._lock = threading.Lock()

    def register_builtin_actions(self) -> None:
        """Register built-in executors (webhook).

        Call this once at startup to make built-in executors discoverable.
        """
        from flowline.actions.builtin import builtin_actions

        self.register(builtin_actions)

    def register(self, plugin: Any) -> None:
        """Register a plugin implementing flowline_get_action_executors.

        Raises:
            ValueError: If an executor name is already registered
        """
        self._pm.register(plugin)
        try:
            self._refresh_classes()
        except ValueError:
            self._pm.unregister(plugin)
            raise

    def add_executor(self, executor: ActionExecutorProtocol) -> None:
        """Register an already-built executor instance under its name.

        Raises:
            ValueError: If the name is already registered
        """
        with self._lock:
            name = executor.name
            if name in self._instances or name in self._classes:
                raise ValueError(f"Duplicate action executor name: '{name}'")
            self._instances[name] = executor

    def _refresh_classes(self) -> None:
        """Refresh executor classes from hooks.

        Raises:
            ValueError: If two executors share a name
        """
        new_classes: dict[str, type[ActionExecutorProtocol]] = {}
        for executors in self._pm.hook.flowline_get_action_executors():
            for cls in executors:
                name = cls.name
                if name in new_classes:
                    raise ValueError(
                        f"Duplicate action executor name: '{name}'. "
                        f"Already registered by {new_classes[name].__name__}"
                    )
                new_classes[name] = cls

        with self._lock:
            for name, cls in new_classes.items():
                instance = self._instances.get(name)
                if instance is not None and not isinstance(instance, cls):
                    raise ValueError(
                        f"Duplicate action executor name: '{name}'. "
                        f"Already registered by {type(instance).__name__}"
                    )
            # All validated, update cache
            self._classes = new_classes

    def available(self) -> list[str]:
        """Names of every registered executor."""
        with self._lock:
            return sorted(set(self._classes) | set(self._instances))

    def has_executor(self, action_type: str) -> bool:
        with self._lock:
            return action_type in self._classes or action_type in self._instances

    def get_executor(self, action_type: str) -> ActionExecutorProtocol:
        """Get (building on first use) the executor for action_type.

        Raises:
            UnknownActionType: Nothing is registered under this name
        """
        with self._lock:
            instance = self._instances.get(action_type)
            if instance is not None:
                return instance
            cls = self._classes.get(action_type)
            if cls is None:
                available = sorted(set(self._classes) | set(self._instances))
                raise UnknownActionType(action_type, available)
            instance = cls(self._settings.options_for(action_type))
            self._instances[action_type] = instance
            return instance

    def close(self) -> None:
        """Close every instantiated executor."""
        with self._lock:
            instances = list(self._instances.values())
        for executor in instances:
            executor.close()
