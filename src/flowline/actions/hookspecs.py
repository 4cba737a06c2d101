# src/flowline/actions/hookspecs.py
"""pluggy hook specifications for action executor plugins.

Plugins implement these hooks to register executors with the engine.
The registry calls these hooks during discovery.

Usage (implementing a plugin):
    from flowline.actions.hookspecs import hookimpl

    class MyPlugin:
        @hookimpl  # NOT @hookspec - that's for defining specs
        def flowline_get_action_executors(self):
            return [SmsExecutor]

Note: @hookspec defines the hook interface (done here).
      @hookimpl marks plugin implementations of those hooks.
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from flowline.actions.protocols import ActionExecutorProtocol

# Project name for pluggy
PROJECT_NAME = "flowline"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class FlowlineActionSpec:
    """Hook specifications for action executor plugins."""

    @hookspec
    def flowline_get_action_executors(self) -> list[type["ActionExecutorProtocol"]]:  # type: ignore[empty-body]
        """Return action executor classes.

        Each class declares a unique ``name``, which is the ``action_type``
        that action nodes refer to.

        Returns:
            List of executor classes (not instances)
        """
