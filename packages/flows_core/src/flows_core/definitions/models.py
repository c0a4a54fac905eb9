"""
Flow definitions: triggers, steps and delays.

A FlowDefinition is immutable once created and round-trips through JSON
(``model_dump(mode="json")`` / ``FlowDefinition.model_validate``), which is
how it is persisted and how the CLI and intake API accept it.

Steps are addressed by a pointer: a list of ints alternating between a step
index and a branch index, e.g. ``[2, 1, 0]`` is the first step of branch 1 of
the decision at top-level step 2. The branch index equal to
``len(branches)`` addresses the ``otherwise`` sequence.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flows_core.definitions.predicates import Always, Predicate
from flows_core.definitions.wallclock import parse_wall_clock
from flows_core.errors import WallClockSpecError


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Delays
# ---------------------------------------------------------------------------


class Relative(_Model):
    """Wait a fixed duration from the moment the delay is entered."""

    kind: Literal["relative"] = "relative"
    duration: timedelta

    @field_validator("duration")
    @classmethod
    def _non_negative(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("duration must not be negative")
        return value


class AbsoluteLocal(_Model):
    """Wait until the next occurrence of a wall-clock time ("9am", "sunday 18:00")."""

    kind: Literal["absolute_local"] = "absolute_local"
    at: str

    @field_validator("at")
    @classmethod
    def _parseable(cls, value: str) -> str:
        try:
            parse_wall_clock(value)
        except WallClockSpecError as exc:
            raise ValueError(exc.message) from exc
        return value


class UntilEvent(_Model):
    """Wait until an event (or property change) satisfies the predicate."""

    kind: Literal["until_event"] = "until_event"
    predicate: Predicate


class UntilComplete(_Model):
    """
    Wait until the Completion Group of a cause resolves.

    ``ref`` names the instance variable holding the cause id, usually set by
    an ``emit_event`` action earlier in the flow.
    """

    kind: Literal["until_complete"] = "until_complete"
    ref: str


DelaySpec = Annotated[
    Union[Relative, AbsoluteLocal, UntilEvent, UntilComplete],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class ActionStep(_Model):
    kind: Literal["action"] = "action"
    handler: str
    params: dict[str, Any] = Field(default_factory=dict)


class DelayStep(_Model):
    kind: Literal["delay"] = "delay"
    delay: DelaySpec


class Branch(_Model):
    when: Predicate
    steps: list["Step"] = Field(default_factory=list)


class DecisionStep(_Model):
    """First branch whose predicate holds wins; otherwise falls through to ``otherwise``."""

    kind: Literal["decision"] = "decision"
    branches: list[Branch]
    otherwise: list["Step"] = Field(default_factory=list)

    def sequence(self, branch_index: int) -> list["Step"]:
        if branch_index == len(self.branches):
            return self.otherwise
        return self.branches[branch_index].steps


Step = Annotated[
    Union[ActionStep, DelayStep, DecisionStep],
    Field(discriminator="kind"),
]

Branch.model_rebuild()
DecisionStep.model_rebuild()


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class Now(_Model):
    """Enroll every contact of a segment as soon as the flow is defined."""

    kind: Literal["now"] = "now"
    segment: str


class At(_Model):
    """Enroll every contact of a segment at an absolute instant."""

    kind: Literal["at"] = "at"
    at: datetime
    segment: str

    @field_validator("at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("At trigger time must be timezone-aware")
        return value


class OnEvent(_Model):
    kind: Literal["on_event"] = "on_event"
    predicate: Predicate


class OnPropertyChange(_Model):
    kind: Literal["on_property_change"] = "on_property_change"
    key: str
    predicate: Predicate = Field(default_factory=Always)


Trigger = Annotated[
    Union[Now, At, OnEvent, OnPropertyChange],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


class FlowDefinition(_Model):
    flow_id: str
    name: str | None = None
    trigger: Trigger
    steps: list[Step]
    goal: Predicate | None = None
    local_time: bool = False  # AbsoluteLocal delays use the contact's timezone

    @field_validator("flow_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("flow_id must not be empty")
        return value

    @property
    def watches_events(self) -> bool:
        """True when existing instances must see every event/change for their contact."""
        return self.goal is not None or any(
            isinstance(step, DelayStep) and isinstance(step.delay, (UntilEvent, UntilComplete))
            for step in iter_steps(self.steps)
        )

    def step_at(self, pointer: Sequence[int]) -> Any:
        return resolve_step(self.steps, pointer)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def iter_steps(steps: Sequence[Any]):
    """Depth-first walk over every step, branches included."""
    for step in steps:
        yield step
        if isinstance(step, DecisionStep):
            for branch in step.branches:
                yield from iter_steps(branch.steps)
            yield from iter_steps(step.otherwise)


# ---------------------------------------------------------------------------
# Step pointer navigation
# ---------------------------------------------------------------------------


def _sequence_at(steps: Sequence[Any], prefix: Sequence[int]) -> Sequence[Any] | None:
    """The step sequence addressed by a pointer prefix of even length."""
    current = steps
    for i in range(0, len(prefix), 2):
        index, branch = prefix[i], prefix[i + 1]
        if index >= len(current):
            return None
        decision = current[index]
        if not isinstance(decision, DecisionStep) or branch > len(decision.branches):
            return None
        current = decision.sequence(branch)
    return current


def resolve_step(steps: Sequence[Any], pointer: Sequence[int]) -> Any:
    """Step at ``pointer``, or None when the pointer is past the end."""
    if not pointer or len(pointer) % 2 == 0:
        return None
    sequence = _sequence_at(steps, pointer[:-1])
    if sequence is None or pointer[-1] >= len(sequence):
        return None
    return sequence[pointer[-1]]


def next_pointer(steps: Sequence[Any], pointer: Sequence[int]) -> list[int] | None:
    """
    Pointer of the step that follows ``pointer`` once it has completed.

    Leaving the end of a branch continues after the enclosing decision.
    Returns None when the flow has no more steps.
    """
    current = list(pointer)
    while current:
        current[-1] += 1
        sequence = _sequence_at(steps, current[:-1])
        if sequence is not None and current[-1] < len(sequence):
            return current
        if len(current) == 1:
            return None
        current = current[:-2]
    return None


def enter_branch(steps: Sequence[Any], pointer: Sequence[int], branch_index: int) -> list[int] | None:
    """Pointer of the first step of a decision's branch (skipping empty branches)."""
    decision = resolve_step(steps, pointer)
    if decision.sequence(branch_index):
        return list(pointer) + [branch_index, 0]
    return next_pointer(steps, pointer)
