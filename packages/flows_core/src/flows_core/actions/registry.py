"""
Action Handler Registry

Maps handler ids used in ActionStep.handler to implementations. Handlers
report success, a retryable failure or a fatal failure; the instance manager
decides what happens next.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flows_core.contracts.envelope import Event, PropertyChange
from flows_core.errors import ActionError, ReservedEventTypeError, UnknownHandlerError, ValidationError

logger = logging.getLogger(__name__)


class ActionOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"

    def __str__(self) -> str:
        return self.value


@dataclass
class ActionResult:
    outcome: ActionOutcome
    reason: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **variables: Any) -> "ActionResult":
        return cls(ActionOutcome.SUCCESS, variables=variables)

    @classmethod
    def retry(cls, reason: str) -> "ActionResult":
        return cls(ActionOutcome.RETRYABLE, reason=reason)

    @classmethod
    def fatal(cls, reason: str) -> "ActionResult":
        return cls(ActionOutcome.FATAL, reason=reason)


@dataclass
class ActionContext:
    """
    What a handler sees of the contact and the running instance.

    ``properties`` is a snapshot taken just before the handler runs.
    ``set_property`` and ``emit_event`` write back through the datastore
    adapters with the instance's causation attached.
    """

    contact_id: str
    instance_id: str
    flow_id: str
    cause_id: str
    now: datetime
    properties: Mapping[str, Any]
    variables: Mapping[str, Any]
    attempt: int = 1
    set_property_fn: Callable[[str, Any], PropertyChange | None] | None = None
    emit_event_fn: Callable[[str, dict[str, Any]], Event] | None = None

    def set_property(self, key: str, value: Any) -> PropertyChange | None:
        if self.set_property_fn is None:
            raise RuntimeError("This context cannot write properties")
        return self.set_property_fn(key, value)

    def emit_event(self, event_type: str, payload: dict[str, Any] | None = None) -> Event:
        if self.emit_event_fn is None:
            raise RuntimeError("This context cannot emit events")
        return self.emit_event_fn(event_type, payload or {})


class ActionHandler(ABC):
    """Base class for action handlers."""

    handler_id: str = ""

    @abstractmethod
    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        pass


class FunctionHandler(ActionHandler):
    """Adapts a plain callable ``fn(ctx, params)`` into a handler."""

    def __init__(self, handler_id: str, fn: Callable[[ActionContext, Mapping[str, Any]], Any]):
        self.handler_id = handler_id
        self._fn = fn

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        result = self._fn(ctx, params)
        if result is None:
            return ActionResult.ok()
        if isinstance(result, ActionResult):
            return result
        if isinstance(result, Mapping):
            return ActionResult.ok(**result)
        raise TypeError(f"Handler {self.handler_id} returned {type(result).__name__}")


class ActionHandlerRegistry:
    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, handler_id: str, handler: ActionHandler | Callable) -> None:
        if not isinstance(handler, ActionHandler):
            handler = FunctionHandler(handler_id, handler)
        if handler_id in self._handlers:
            logger.warning(f"Replacing action handler {handler_id}")
        self._handlers[handler_id] = handler

    def unregister(self, handler_id: str) -> None:
        self._handlers.pop(handler_id, None)

    def get(self, handler_id: str) -> ActionHandler:
        try:
            return self._handlers[handler_id]
        except KeyError:
            raise UnknownHandlerError(f"No action handler registered as {handler_id!r}") from None

    def __contains__(self, handler_id: str) -> bool:
        return handler_id in self._handlers

    def handler_ids(self) -> list[str]:
        return sorted(self._handlers)

    def execute(self, handler_id: str, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        """
        Run a handler and fold any exception into an ActionResult.

        ActionError subclasses carry their own retryability; a rejected
        property write, a reserved event type and an unknown handler are
        fatal; anything else is treated as a retryable transient failure.
        """
        try:
            handler = self.get(handler_id)
            return handler.execute(ctx, params)
        except UnknownHandlerError as e:
            return ActionResult.fatal(e.message)
        except (ValidationError, ReservedEventTypeError) as e:
            return ActionResult.fatal(e.message)
        except ActionError as e:
            if e.retryable:
                return ActionResult.retry(e.message)
            return ActionResult.fatal(e.message)
        except Exception as e:
            logger.error(
                f"Unexpected error in action handler {handler_id}",
                extra={
                    "handler": handler_id,
                    "instance_id": ctx.instance_id,
                    "contact_id": ctx.contact_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            return ActionResult.retry(f"{type(e).__name__}: {e}")
