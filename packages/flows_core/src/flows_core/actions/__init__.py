"""Action handlers: the registry and the built-in handlers."""

from flows_core.actions.builtin import register_builtin_handlers
from flows_core.actions.registry import (
    ActionContext,
    ActionHandler,
    ActionHandlerRegistry,
    ActionOutcome,
    ActionResult,
)

__all__ = [
    "ActionContext",
    "ActionHandler",
    "ActionHandlerRegistry",
    "ActionOutcome",
    "ActionResult",
    "register_builtin_handlers",
]
