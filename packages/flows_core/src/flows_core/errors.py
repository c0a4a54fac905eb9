"""
Flow engine errors.

Propagation rules:
- ValidationError and DuplicateInstanceError are handled where they happen
  and never abort the engine.
- RetryableActionError / FatalActionError are contained to the instance that
  ran the action.
- SchedulerDurabilityError is engine-fatal: the scheduler halts instead of
  dropping a wake.
"""

from typing import Any


class FlowEngineError(Exception):
    """Base error for the flow engine."""

    code = "flow_engine_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(FlowEngineError):
    """Property write rejected by the contact schema. No state was changed."""

    code = "validation_error"

    def __init__(self, key: str, reason: str, value: Any = None):
        super().__init__(
            f"Invalid value for property '{key}': {reason}",
            details={"key": key, "reason": reason, "value": value},
        )
        self.key = key
        self.reason = reason


class DuplicateInstanceError(FlowEngineError):
    """The contact already has a non-terminal instance of this flow."""

    code = "duplicate_instance"

    def __init__(self, flow_id: str, contact_id: str, existing_instance_id: str):
        super().__init__(
            f"Contact {contact_id} already active in flow {flow_id}",
            details={
                "flow_id": flow_id,
                "contact_id": contact_id,
                "existing_instance_id": existing_instance_id,
            },
        )
        self.existing_instance_id = existing_instance_id


class ActionError(FlowEngineError):
    """Failure reported by an action handler."""

    code = "action_error"
    retryable = False


class RetryableActionError(ActionError):
    """Transient failure; the step is retried with backoff."""

    code = "retryable_action_error"
    retryable = True


class FatalActionError(ActionError):
    """Non-retryable failure; the instance becomes failed."""

    code = "fatal_action_error"


class SchedulerDurabilityError(FlowEngineError):
    """Wake queue is inconsistent with persisted instances."""

    code = "scheduler_durability_error"


class UnknownFlowError(FlowEngineError):
    code = "unknown_flow"


class UnknownHandlerError(FlowEngineError):
    code = "unknown_handler"


class UnknownInstanceError(FlowEngineError):
    code = "unknown_instance"


class WallClockSpecError(FlowEngineError):
    """Wall-clock delay spec could not be parsed."""

    code = "invalid_wall_clock_spec"


class ReservedEventTypeError(FlowEngineError):
    """Event type is published by the engine itself and cannot be emitted."""

    code = "reserved_event_type"

    def __init__(self, event_type: str):
        super().__init__(
            f"Event type {event_type} is reserved for the engine",
            details={"event_type": event_type},
        )
        self.event_type = event_type
