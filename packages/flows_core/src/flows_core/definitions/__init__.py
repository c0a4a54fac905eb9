"""Flow definition models, predicates and wall-clock specs."""

from flows_core.definitions.models import (
    AbsoluteLocal,
    ActionStep,
    At,
    Branch,
    DecisionStep,
    DelayStep,
    FlowDefinition,
    Now,
    OnEvent,
    OnPropertyChange,
    Relative,
    UntilComplete,
    UntilEvent,
)
from flows_core.definitions.predicates import (
    AllOf,
    Always,
    AnyOf,
    ChangeIs,
    Condition,
    EventIs,
    Not,
    PredicateContext,
)

__all__ = [
    "AbsoluteLocal",
    "ActionStep",
    "At",
    "Branch",
    "DecisionStep",
    "DelayStep",
    "FlowDefinition",
    "Now",
    "OnEvent",
    "OnPropertyChange",
    "Relative",
    "UntilComplete",
    "UntilEvent",
    "AllOf",
    "Always",
    "AnyOf",
    "ChangeIs",
    "Condition",
    "EventIs",
    "Not",
    "PredicateContext",
]
