"""Engine components: bus, scheduler, triggers, instances, completion and the FlowEngine facade."""

from flows_core.engine.clock import Clock, ManualClock, SystemClock
from flows_core.engine.runtime import FlowEngine
from flows_core.engine.state import CompletionGroup, FlowInstance, InstanceStatus

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "FlowEngine",
    "CompletionGroup",
    "FlowInstance",
    "InstanceStatus",
]
