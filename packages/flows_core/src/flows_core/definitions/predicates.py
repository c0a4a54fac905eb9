"""
Declarative predicates used by triggers, decisions, goals and UntilEvent delays.

Predicates are pydantic models discriminated by ``kind`` so flow definitions
round-trip through JSON. Evaluation is pure: it reads a PredicateContext and
never touches the datastore. A comparison between incompatible types is false,
it never raises.
"""

import fnmatch
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from flows_core.contracts.envelope import Event, PropertyChange

logger = logging.getLogger(__name__)

Operator = Literal[
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "exists",
    "not_exists",
    "in",
    "not_in",
    "contains",
    "matches",
]

_MISSING = object()


@dataclass(frozen=True)
class PredicateContext:
    """Everything a predicate may look at."""

    properties: Mapping[str, Any] = field(default_factory=dict)
    event: Event | None = None
    change: PropertyChange | None = None
    variables: Mapping[str, Any] = field(default_factory=dict)


def _lookup_path(data: Any, path: str) -> Any:
    """Resolve a dotted path ("order.total") inside nested mappings."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Line up datetimes with ISO strings so they can be compared."""
    if isinstance(left, datetime) and isinstance(right, str):
        try:
            return left, datetime.fromisoformat(right)
        except ValueError:
            return left, right
    if isinstance(right, datetime) and isinstance(left, str):
        try:
            return datetime.fromisoformat(left), right
        except ValueError:
            return left, right
    return left, right


def _ordered(left: Any, right: Any, op: str) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return False
    left, right = _coerce_pair(left, right)
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right
    except TypeError:
        logger.debug(
            f"Cannot order {type(left).__name__} against {type(right).__name__}",
            extra={"op": op},
        )
        return False


class _PredicateBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def evaluate(self, ctx: PredicateContext) -> bool:  # pragma: no cover - overridden
        raise NotImplementedError


class Condition(_PredicateBase):
    """
    Compare one value against a literal.

    ``source`` selects where the value is read from:
        property: the contact's current properties
        payload:  the triggering event's payload (dotted paths allowed)
        change:   the property change record ("key", "old", "new")
        variable: the instance's variables
    """

    kind: Literal["condition"] = "condition"
    source: Literal["property", "payload", "change", "variable"] = "property"
    key: str
    op: Operator = "eq"
    value: Any = None

    def _subject(self, ctx: PredicateContext) -> Any:
        if self.source == "property":
            return _lookup_path(ctx.properties, self.key)
        if self.source == "payload":
            if ctx.event is None:
                return _MISSING
            return _lookup_path(ctx.event.payload, self.key)
        if self.source == "change":
            if ctx.change is None:
                return _MISSING
            record = {
                "key": ctx.change.key,
                "old": ctx.change.old_value,
                "new": ctx.change.new_value,
            }
            return record.get(self.key, _MISSING)
        return _lookup_path(ctx.variables, self.key)

    def evaluate(self, ctx: PredicateContext) -> bool:
        subject = self._subject(ctx)
        op = self.op

        if op == "exists":
            return subject is not _MISSING and subject is not None
        if op == "not_exists":
            return subject is _MISSING or subject is None

        if subject is _MISSING:
            subject = None

        if op in ("eq", "neq"):
            left, right = _coerce_pair(subject, self.value)
            equal = left == right and isinstance(left, bool) == isinstance(right, bool)
            return equal if op == "eq" else not equal
        if op in ("in", "not_in"):
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                return False
            found = subject in self.value
            return found if op == "in" else not found
        if op == "contains":
            if isinstance(subject, str):
                return isinstance(self.value, str) and self.value in subject
            if isinstance(subject, (list, tuple, set, frozenset)):
                return self.value in subject
            return False
        if op == "matches":
            if subject is None or not isinstance(self.value, str):
                return False
            return fnmatch.fnmatchcase(str(subject), self.value)
        if subject is None or self.value is None:
            return False
        return _ordered(subject, self.value, op)


class EventIs(_PredicateBase):
    """True for an event of the given type whose conditions all hold."""

    kind: Literal["event"] = "event"
    event_type: str
    where: list["Predicate"] = Field(default_factory=list)

    def evaluate(self, ctx: PredicateContext) -> bool:
        if ctx.event is None or ctx.event.event_type != self.event_type:
            return False
        return all(p.evaluate(ctx) for p in self.where)


class ChangeIs(_PredicateBase):
    """True for a change of the given property whose conditions all hold."""

    kind: Literal["change"] = "change"
    key: str
    where: list["Predicate"] = Field(default_factory=list)

    def evaluate(self, ctx: PredicateContext) -> bool:
        if ctx.change is None or ctx.change.key != self.key:
            return False
        return all(p.evaluate(ctx) for p in self.where)


class AllOf(_PredicateBase):
    kind: Literal["all"] = "all"
    items: list["Predicate"]

    def evaluate(self, ctx: PredicateContext) -> bool:
        return all(p.evaluate(ctx) for p in self.items)


class AnyOf(_PredicateBase):
    kind: Literal["any"] = "any"
    items: list["Predicate"]

    def evaluate(self, ctx: PredicateContext) -> bool:
        return any(p.evaluate(ctx) for p in self.items)


class Not(_PredicateBase):
    kind: Literal["not"] = "not"
    item: "Predicate"

    def evaluate(self, ctx: PredicateContext) -> bool:
        return not self.item.evaluate(ctx)


class Always(_PredicateBase):
    kind: Literal["always"] = "always"

    def evaluate(self, ctx: PredicateContext) -> bool:
        return True


Predicate = Annotated[
    Union[Condition, EventIs, ChangeIs, AllOf, AnyOf, Not, Always],
    Field(discriminator="kind"),
]

for _model in (EventIs, ChangeIs, AllOf, AnyOf, Not):
    _model.model_rebuild()

_predicate_adapter = TypeAdapter(Predicate)


def evaluate(predicate: Any, ctx: PredicateContext) -> bool:
    """Evaluate a predicate model (or a predicate dict) against a context."""
    if isinstance(predicate, Mapping):
        predicate = parse_predicate(predicate)
    return predicate.evaluate(ctx)


def parse_predicate(data: Mapping[str, Any]) -> Any:
    """Build a predicate model from its JSON form."""
    return _predicate_adapter.validate_python(dict(data))


# Shorthands for flow authors
def prop(key: str, op: str = "eq", value: Any = None) -> Condition:
    return Condition(source="property", key=key, op=op, value=value)


def payload(key: str, op: str = "eq", value: Any = None) -> Condition:
    return Condition(source="payload", key=key, op=op, value=value)


def changed_to(value: Any) -> Condition:
    return Condition(source="change", key="new", op="eq", value=value)


def event_is(event_type: str, *where: Any) -> EventIs:
    return EventIs(event_type=event_type, where=list(where))
