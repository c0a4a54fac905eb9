"""Flow catalog: cached flow definitions in front of the FlowStore."""

import threading

from flows_core.definitions.models import FlowDefinition
from flows_core.persistence.repo import FlowStore


class FlowCatalog:
    """
    Definitions by flow id, plus the set of active (triggerable) flows.

    Active definitions are loaded on refresh(); inactive ones are fetched on
    demand because running instances of an undefined flow still need them.
    """

    def __init__(self, store: FlowStore):
        self.store = store
        self._lock = threading.Lock()
        self._definitions: dict[str, FlowDefinition] = {}
        self._active: set[str] = set()
        self.refresh()

    def refresh(self) -> int:
        definitions = self.store.list_definitions(active_only=True)
        with self._lock:
            self._definitions.update({d.flow_id: d for d in definitions})
            self._active = {d.flow_id for d in definitions}
        return len(definitions)

    def put(self, definition: FlowDefinition) -> None:
        with self._lock:
            self._definitions[definition.flow_id] = definition
            self._active.add(definition.flow_id)

    def deactivate(self, flow_id: str) -> None:
        with self._lock:
            self._active.discard(flow_id)

    def get(self, flow_id: str) -> FlowDefinition | None:
        with self._lock:
            definition = self._definitions.get(flow_id)
        if definition is None:
            definition = self.store.get_definition(flow_id)
            if definition is not None:
                with self._lock:
                    self._definitions[flow_id] = definition
        return definition

    def is_active(self, flow_id: str) -> bool:
        with self._lock:
            return flow_id in self._active

    def active(self) -> list[FlowDefinition]:
        with self._lock:
            return [self._definitions[f] for f in sorted(self._active)]
