"""
Runtime state records: flow instances and completion groups.

These are plain dataclasses; FlowStore implementations persist them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flows_core.contracts.envelope import new_id, utcnow


class InstanceStatus(str, Enum):
    RUNNING = "running"
    WAITING_ON_DELAY = "waiting_on_delay"
    WAITING_ON_EVENT = "waiting_on_event"
    COMPLETED_BY_FINISH = "completed_by_finish"
    COMPLETED_BY_GOAL = "completed_by_goal"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        InstanceStatus.COMPLETED_BY_FINISH,
        InstanceStatus.COMPLETED_BY_GOAL,
        InstanceStatus.FAILED,
    }
)


@dataclass
class FlowInstance:
    """
    One contact's run through one flow.

    ``pointer`` addresses the current step (see definitions.models). While
    waiting on a delay it addresses the delay step; while an action retry is
    pending it addresses the action and ``wake_at`` holds the retry time.
    """

    instance_id: str
    flow_id: str
    contact_id: str
    cause_id: str
    status: InstanceStatus = InstanceStatus.RUNNING
    pointer: list[int] = field(default_factory=lambda: [0])
    wake_at: datetime | None = None
    waiting_on: dict[str, Any] | None = None  # predicate JSON while waiting_on_event
    variables: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    last_error: str | None = None
    failure_reason: str | None = None
    entered_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @classmethod
    def start(cls, flow_id: str, contact_id: str, cause_id: str, now: datetime | None = None) -> "FlowInstance":
        now = now or utcnow()
        return cls(
            instance_id=new_id(),
            flow_id=flow_id,
            contact_id=contact_id,
            cause_id=cause_id,
            entered_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def status_view(self) -> dict[str, Any]:
        """Public status shape returned by query_instance_status."""
        return {
            "instance_id": self.instance_id,
            "flow_id": self.flow_id,
            "contact_id": self.contact_id,
            "cause_id": self.cause_id,
            "status": self.status.value,
            "pointer": list(self.pointer),
            "wake_at": self.wake_at.isoformat() if self.wake_at else None,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "failure_reason": self.failure_reason,
            "entered_at": self.entered_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class CompletionGroup:
    """
    Instances spawned, directly or transitively, by one cause.

    ``opened`` is set once the cause's fan-out has run. The group resolves
    when it is opened, no member is still active and no emission made by a
    member is still undelivered.
    """

    cause_id: str
    members: set[str] = field(default_factory=set)
    active: set[str] = field(default_factory=set)
    pending_emissions: int = 0
    continuations: list[dict[str, str]] = field(default_factory=list)
    opened: bool = False
    resolved: bool = False
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def is_settled(self) -> bool:
        return self.opened and not self.active and self.pending_emissions <= 0
