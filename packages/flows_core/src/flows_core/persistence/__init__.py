"""Engine-owned persistence (definitions, instances, completion groups)."""

from flows_core.persistence.repo import FlowStore, InMemoryFlowStore, SqlFlowStore

__all__ = ["FlowStore", "InMemoryFlowStore", "SqlFlowStore"]
