# src/flowline/engine/templates.py
"""Jinja2-based rendering of action parameters.

Every string inside an action node's params (nested dicts and lists
included) is a template rendered against the entry's context:

    params:
      to: "{{ subscriber.email }}"
      subject: "Thanks for order {{ event.order_number }}"
      items: ["{{ event.first_item }}", "fixed"]

Non-string values pass through unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import Any

from jinja2 import StrictUndefined, Template, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from flowline.contracts.errors import TemplateError

# Use sandboxed environment for security; one shared instance is thread-safe
_ENV = SandboxedEnvironment(
    undefined=StrictUndefined,  # Raise on undefined variables
    autoescape=False,  # Params feed APIs, not HTML
)


@lru_cache(maxsize=1024)
def compile_template(template_string: str) -> Template:
    """Compile (and cache) a template string.

    Raises:
        TemplateError: If template syntax is invalid
    """
    try:
        return _ENV.from_string(template_string)
    except TemplateSyntaxError as e:
        raise TemplateError(f"Invalid template syntax: {e}") from e


def render_string(template_string: str, context: Mapping[str, Any]) -> str:
    """Render one template string.

    Raises:
        TemplateError: If rendering fails (undefined variable, sandbox violation, etc.)
    """
    template = compile_template(template_string)
    try:
        return template.render(**context)
    except UndefinedError as e:
        raise TemplateError(f"Undefined variable: {e}") from e
    except SecurityError as e:
        raise TemplateError(f"Sandbox violation: {e}") from e
    except Exception as e:
        raise TemplateError(f"Template rendering failed: {e}") from e


def render_params(params: Any, context: Mapping[str, Any]) -> Any:
    """Render every string in a params structure against context."""
    if isinstance(params, str):
        return render_string(params, context)
    if isinstance(params, Mapping):
        return {key: render_params(value, context) for key, value in params.items()}
    if isinstance(params, (list, tuple)):
        return [render_params(value, context) for value in params]
    return params


def check_params(params: Any) -> None:
    """Compile every template in params without rendering.

    Raises:
        TemplateError: On the first syntax error
    """
    if isinstance(params, str):
        compile_template(params)
    elif isinstance(params, Mapping):
        for value in params.values():
            check_params(value)
    elif isinstance(params, (list, tuple)):
        for value in params:
            check_params(value)
