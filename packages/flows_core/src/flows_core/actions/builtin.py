"""
Built-in action handlers.

    set_property        {"key": ..., "value": ...}
    increment_property  {"key": ..., "by": 1}
    emit_event          {"type": ..., "payload": {...}, "as": "var_name"}
    log                 {"message": ...}
"""

import logging
from collections.abc import Mapping
from typing import Any

from flows_core.actions.registry import ActionContext, ActionHandler, ActionHandlerRegistry, ActionResult
from flows_core.contracts.types import INTERNAL_EVENT_TYPES
from flows_core.errors import FatalActionError

logger = logging.getLogger(__name__)

DEFAULT_EVENT_VARIABLE = "emitted_event_id"


def _require(params: Mapping[str, Any], key: str) -> Any:
    if key not in params:
        raise FatalActionError(f"Missing required parameter {key!r}")
    return params[key]


class SetPropertyHandler(ActionHandler):
    handler_id = "set_property"

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        key = _require(params, "key")
        ctx.set_property(key, params.get("value"))
        return ActionResult.ok()


class IncrementPropertyHandler(ActionHandler):
    handler_id = "increment_property"

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        key = _require(params, "key")
        by = params.get("by", 1)
        current = ctx.properties.get(key) or 0
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            return ActionResult.fatal(f"Property {key!r} is not numeric")
        ctx.set_property(key, current + by)
        return ActionResult.ok()


class EmitEventHandler(ActionHandler):
    """
    Append an event to the contact's history.

    The new event id is stored in the variable named by ``as`` so a later
    UntilComplete delay can wait for everything the event sets off.
    """

    handler_id = "emit_event"

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        event_type = _require(params, "type")
        if event_type in INTERNAL_EVENT_TYPES:
            return ActionResult.fatal(f"Event type {event_type} is reserved for the engine")
        payload = params.get("payload") or {}
        if not isinstance(payload, Mapping):
            return ActionResult.fatal("payload must be an object")
        event = ctx.emit_event(event_type, dict(payload))
        variable = params.get("as") or DEFAULT_EVENT_VARIABLE
        return ActionResult.ok(**{variable: event.event_id})


class LogHandler(ActionHandler):
    handler_id = "log"

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        logger.info(
            str(params.get("message", "")),
            extra={"contact_id": ctx.contact_id, "instance_id": ctx.instance_id, "flow_id": ctx.flow_id},
        )
        return ActionResult.ok()


BUILTIN_HANDLERS = (SetPropertyHandler, IncrementPropertyHandler, EmitEventHandler, LogHandler)


def register_builtin_handlers(registry: ActionHandlerRegistry) -> ActionHandlerRegistry:
    for handler_cls in BUILTIN_HANDLERS:
        registry.register(handler_cls.handler_id, handler_cls())
    return registry
