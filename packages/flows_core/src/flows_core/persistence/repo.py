"""
Flow Store

Persistence for flow definitions, instances and completion groups.

InMemoryFlowStore backs tests and single-process runs; SqlFlowStore persists
to any SQLAlchemy database (SQLite, Postgres). Both enforce the one active
instance per (flow, contact) rule at insert time.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from flows_core.definitions.models import At, FlowDefinition
from flows_core.engine.state import CompletionGroup, FlowInstance, InstanceStatus
from flows_core.errors import DuplicateInstanceError
from flows_core.persistence.models import (
    CompletionGroupMemberRow,
    CompletionGroupRow,
    FlowDefinitionRow,
    FlowInstanceRow,
    FlowsBase,
)

logger = logging.getLogger(__name__)


class FlowStore(ABC):
    """Storage contract used by every engine component."""

    # =========================================================================
    # Definitions
    # =========================================================================

    @abstractmethod
    def save_definition(self, definition: FlowDefinition) -> None:
        """Insert or replace a definition and mark it active."""

    @abstractmethod
    def deactivate_definition(self, flow_id: str) -> bool:
        """Stop a flow from triggering. Returns False for unknown flows."""

    @abstractmethod
    def get_definition(self, flow_id: str) -> FlowDefinition | None:
        """Definition by id, active or not (running instances still need it)."""

    @abstractmethod
    def is_active_definition(self, flow_id: str) -> bool:
        pass

    @abstractmethod
    def list_definitions(self, active_only: bool = True) -> list[FlowDefinition]:
        pass

    @abstractmethod
    def claim_at_trigger(self, flow_id: str, fired_at: datetime) -> bool:
        """Mark an At trigger fired. Only the first caller gets True."""

    @abstractmethod
    def pending_at_definitions(self) -> list[FlowDefinition]:
        """Active At-triggered flows that have not fired yet."""

    # =========================================================================
    # Instances
    # =========================================================================

    @abstractmethod
    def add_instance(self, instance: FlowInstance) -> None:
        """
        Insert a new instance.

        Raises:
            DuplicateInstanceError: the contact already has an active
                instance of the flow.
        """

    @abstractmethod
    def save_instance(self, instance: FlowInstance) -> None:
        pass

    @abstractmethod
    def get_instance(self, instance_id: str) -> FlowInstance | None:
        pass

    @abstractmethod
    def find_active(self, flow_id: str, contact_id: str) -> FlowInstance | None:
        pass

    @abstractmethod
    def list_active_for_contact(self, contact_id: str) -> list[FlowInstance]:
        pass

    @abstractmethod
    def list_instances(
        self,
        contact_id: str | None = None,
        flow_id: str | None = None,
        status: InstanceStatus | None = None,
        limit: int | None = None,
    ) -> list[FlowInstance]:
        pass

    @abstractmethod
    def list_scheduled(self) -> list[FlowInstance]:
        """Active instances with a pending wake (delay or retry)."""

    @abstractmethod
    def list_stalled(self) -> list[FlowInstance]:
        """Running instances with no wake; left behind by a crash mid-advance."""

    # =========================================================================
    # Completion groups
    # =========================================================================

    @abstractmethod
    def get_group(self, cause_id: str) -> CompletionGroup | None:
        pass

    @abstractmethod
    def save_group(self, group: CompletionGroup) -> None:
        pass

    @abstractmethod
    def groups_for_instance(self, instance_id: str) -> list[CompletionGroup]:
        """Unresolved groups the instance belongs to."""


class InMemoryFlowStore(FlowStore):
    """Dict-backed store. Returns copies so callers must save to persist changes."""

    def __init__(self):
        self._lock = threading.RLock()
        self._definitions: dict[str, FlowDefinition] = {}
        self._active_definitions: set[str] = set()
        self._at_fired: dict[str, datetime] = {}
        self._instances: dict[str, FlowInstance] = {}
        self._active_index: dict[tuple[str, str], str] = {}
        self._groups: dict[str, CompletionGroup] = {}
        self._membership: dict[str, set[str]] = {}

    def save_definition(self, definition: FlowDefinition) -> None:
        with self._lock:
            self._definitions[definition.flow_id] = definition
            self._active_definitions.add(definition.flow_id)
            self._at_fired.pop(definition.flow_id, None)

    def deactivate_definition(self, flow_id: str) -> bool:
        with self._lock:
            if flow_id not in self._definitions:
                return False
            self._active_definitions.discard(flow_id)
            return True

    def get_definition(self, flow_id: str) -> FlowDefinition | None:
        with self._lock:
            return self._definitions.get(flow_id)

    def is_active_definition(self, flow_id: str) -> bool:
        with self._lock:
            return flow_id in self._active_definitions

    def list_definitions(self, active_only: bool = True) -> list[FlowDefinition]:
        with self._lock:
            return [
                d
                for fid, d in self._definitions.items()
                if not active_only or fid in self._active_definitions
            ]

    def claim_at_trigger(self, flow_id: str, fired_at: datetime) -> bool:
        with self._lock:
            if flow_id in self._at_fired:
                return False
            self._at_fired[flow_id] = fired_at
            return True

    def pending_at_definitions(self) -> list[FlowDefinition]:
        with self._lock:
            return [
                d
                for d in self.list_definitions(active_only=True)
                if isinstance(d.trigger, At) and d.flow_id not in self._at_fired
            ]

    def add_instance(self, instance: FlowInstance) -> None:
        key = (instance.flow_id, instance.contact_id)
        with self._lock:
            existing = self._active_index.get(key)
            if existing is not None:
                raise DuplicateInstanceError(instance.flow_id, instance.contact_id, existing)
            self._instances[instance.instance_id] = copy.deepcopy(instance)
            if not instance.is_terminal:
                self._active_index[key] = instance.instance_id

    def save_instance(self, instance: FlowInstance) -> None:
        key = (instance.flow_id, instance.contact_id)
        with self._lock:
            self._instances[instance.instance_id] = copy.deepcopy(instance)
            if instance.is_terminal and self._active_index.get(key) == instance.instance_id:
                del self._active_index[key]

    def get_instance(self, instance_id: str) -> FlowInstance | None:
        with self._lock:
            instance = self._instances.get(instance_id)
            return copy.deepcopy(instance) if instance else None

    def find_active(self, flow_id: str, contact_id: str) -> FlowInstance | None:
        with self._lock:
            instance_id = self._active_index.get((flow_id, contact_id))
            return self.get_instance(instance_id) if instance_id else None

    def list_active_for_contact(self, contact_id: str) -> list[FlowInstance]:
        with self._lock:
            return [
                self.get_instance(iid)
                for (_, cid), iid in self._active_index.items()
                if cid == contact_id
            ]

    def list_instances(
        self,
        contact_id: str | None = None,
        flow_id: str | None = None,
        status: InstanceStatus | None = None,
        limit: int | None = None,
    ) -> list[FlowInstance]:
        with self._lock:
            found = [
                copy.deepcopy(i)
                for i in self._instances.values()
                if (contact_id is None or i.contact_id == contact_id)
                and (flow_id is None or i.flow_id == flow_id)
                and (status is None or i.status == status)
            ]
        found.sort(key=lambda i: i.entered_at)
        return found[:limit] if limit else found

    def list_scheduled(self) -> list[FlowInstance]:
        with self._lock:
            return [
                copy.deepcopy(i)
                for i in self._instances.values()
                if not i.is_terminal and i.wake_at is not None
            ]

    def list_stalled(self) -> list[FlowInstance]:
        with self._lock:
            return [
                copy.deepcopy(i)
                for i in self._instances.values()
                if i.status == InstanceStatus.RUNNING and i.wake_at is None
            ]

    def get_group(self, cause_id: str) -> CompletionGroup | None:
        with self._lock:
            group = self._groups.get(cause_id)
            return copy.deepcopy(group) if group else None

    def save_group(self, group: CompletionGroup) -> None:
        with self._lock:
            self._groups[group.cause_id] = copy.deepcopy(group)
            for member in group.members:
                self._membership.setdefault(member, set()).add(group.cause_id)

    def groups_for_instance(self, instance_id: str) -> list[CompletionGroup]:
        with self._lock:
            return [
                copy.deepcopy(self._groups[cause])
                for cause in sorted(self._membership.get(instance_id, ()))
                if not self._groups[cause].resolved
            ]


def _instance_from_row(row: FlowInstanceRow) -> FlowInstance:
    return FlowInstance(
        instance_id=row.instance_id,
        flow_id=row.flow_id,
        contact_id=row.contact_id,
        cause_id=row.cause_id,
        status=InstanceStatus(row.status),
        pointer=list(row.pointer or [0]),
        wake_at=row.wake_at,
        waiting_on=row.waiting_on,
        variables=dict(row.variables or {}),
        attempts=row.attempts,
        last_error=row.last_error,
        failure_reason=row.failure_reason,
        entered_at=row.entered_at,
        updated_at=row.updated_at,
        finished_at=row.finished_at,
    )


def _apply_instance(row: FlowInstanceRow, instance: FlowInstance) -> None:
    row.flow_id = instance.flow_id
    row.contact_id = instance.contact_id
    row.cause_id = instance.cause_id
    row.status = instance.status.value
    row.is_active = not instance.is_terminal
    row.pointer = list(instance.pointer)
    row.wake_at = instance.wake_at
    row.waiting_on = instance.waiting_on
    row.variables = dict(instance.variables)
    row.attempts = instance.attempts
    row.last_error = instance.last_error
    row.failure_reason = instance.failure_reason
    row.entered_at = instance.entered_at
    row.finished_at = instance.finished_at


class SqlFlowStore(FlowStore):
    """SQLAlchemy-backed store. Each call runs in its own short session."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: Engine, create_tables: bool = True) -> "SqlFlowStore":
        if create_tables:
            FlowsBase.metadata.create_all(engine)
        return cls(sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine))

    def _session(self) -> Session:
        return self._session_factory()

    # =========================================================================
    # Definitions
    # =========================================================================

    def save_definition(self, definition: FlowDefinition) -> None:
        with self._session() as db:
            row = db.get(FlowDefinitionRow, definition.flow_id)
            if row is None:
                row = FlowDefinitionRow(flow_id=definition.flow_id)
                db.add(row)
            row.name = definition.name
            row.trigger_kind = definition.trigger.kind
            row.definition = definition.to_json()
            row.is_active = True
            row.at_fired_at = None
            db.commit()

    def deactivate_definition(self, flow_id: str) -> bool:
        with self._session() as db:
            row = db.get(FlowDefinitionRow, flow_id)
            if row is None:
                return False
            row.is_active = False
            db.commit()
            return True

    def get_definition(self, flow_id: str) -> FlowDefinition | None:
        with self._session() as db:
            row = db.get(FlowDefinitionRow, flow_id)
            return FlowDefinition.model_validate(row.definition) if row else None

    def is_active_definition(self, flow_id: str) -> bool:
        with self._session() as db:
            row = db.get(FlowDefinitionRow, flow_id)
            return bool(row and row.is_active)

    def list_definitions(self, active_only: bool = True) -> list[FlowDefinition]:
        with self._session() as db:
            query = db.query(FlowDefinitionRow)
            if active_only:
                query = query.filter(FlowDefinitionRow.is_active == True)  # noqa: E712
            rows = query.order_by(FlowDefinitionRow.created_at).all()
            return [FlowDefinition.model_validate(r.definition) for r in rows]

    def claim_at_trigger(self, flow_id: str, fired_at: datetime) -> bool:
        with self._session() as db:
            result = db.execute(
                update(FlowDefinitionRow)
                .where(
                    FlowDefinitionRow.flow_id == flow_id,
                    FlowDefinitionRow.at_fired_at.is_(None),
                )
                .values(at_fired_at=fired_at)
            )
            db.commit()
            return result.rowcount == 1

    def pending_at_definitions(self) -> list[FlowDefinition]:
        with self._session() as db:
            rows = (
                db.query(FlowDefinitionRow)
                .filter(
                    FlowDefinitionRow.is_active == True,  # noqa: E712
                    FlowDefinitionRow.trigger_kind == "at",
                    FlowDefinitionRow.at_fired_at.is_(None),
                )
                .all()
            )
            return [FlowDefinition.model_validate(r.definition) for r in rows]

    # =========================================================================
    # Instances
    # =========================================================================

    def _active_row(self, db: Session, flow_id: str, contact_id: str) -> FlowInstanceRow | None:
        return (
            db.query(FlowInstanceRow)
            .filter(
                FlowInstanceRow.flow_id == flow_id,
                FlowInstanceRow.contact_id == contact_id,
                FlowInstanceRow.is_active == True,  # noqa: E712
            )
            .first()
        )

    def add_instance(self, instance: FlowInstance) -> None:
        with self._session() as db:
            existing = self._active_row(db, instance.flow_id, instance.contact_id)
            if existing is not None:
                raise DuplicateInstanceError(instance.flow_id, instance.contact_id, existing.instance_id)

            row = FlowInstanceRow(instance_id=instance.instance_id)
            _apply_instance(row, instance)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Lost a race with another process inserting the same pair
                db.rollback()
                existing = self._active_row(db, instance.flow_id, instance.contact_id)
                raise DuplicateInstanceError(
                    instance.flow_id,
                    instance.contact_id,
                    existing.instance_id if existing else "unknown",
                ) from None

    def save_instance(self, instance: FlowInstance) -> None:
        with self._session() as db:
            row = db.get(FlowInstanceRow, instance.instance_id)
            if row is None:
                row = FlowInstanceRow(instance_id=instance.instance_id)
                db.add(row)
            _apply_instance(row, instance)
            db.commit()

    def get_instance(self, instance_id: str) -> FlowInstance | None:
        with self._session() as db:
            row = db.get(FlowInstanceRow, instance_id)
            return _instance_from_row(row) if row else None

    def find_active(self, flow_id: str, contact_id: str) -> FlowInstance | None:
        with self._session() as db:
            row = self._active_row(db, flow_id, contact_id)
            return _instance_from_row(row) if row else None

    def list_active_for_contact(self, contact_id: str) -> list[FlowInstance]:
        with self._session() as db:
            rows = (
                db.query(FlowInstanceRow)
                .filter(
                    FlowInstanceRow.contact_id == contact_id,
                    FlowInstanceRow.is_active == True,  # noqa: E712
                )
                .order_by(FlowInstanceRow.entered_at)
                .all()
            )
            return [_instance_from_row(r) for r in rows]

    def list_instances(
        self,
        contact_id: str | None = None,
        flow_id: str | None = None,
        status: InstanceStatus | None = None,
        limit: int | None = None,
    ) -> list[FlowInstance]:
        with self._session() as db:
            query = db.query(FlowInstanceRow)
            if contact_id is not None:
                query = query.filter(FlowInstanceRow.contact_id == contact_id)
            if flow_id is not None:
                query = query.filter(FlowInstanceRow.flow_id == flow_id)
            if status is not None:
                query = query.filter(FlowInstanceRow.status == InstanceStatus(status).value)
            query = query.order_by(FlowInstanceRow.entered_at)
            if limit:
                query = query.limit(limit)
            return [_instance_from_row(r) for r in query.all()]

    def list_scheduled(self) -> list[FlowInstance]:
        with self._session() as db:
            rows = (
                db.query(FlowInstanceRow)
                .filter(
                    FlowInstanceRow.is_active == True,  # noqa: E712
                    FlowInstanceRow.wake_at.isnot(None),
                )
                .all()
            )
            return [_instance_from_row(r) for r in rows]

    def list_stalled(self) -> list[FlowInstance]:
        with self._session() as db:
            rows = (
                db.query(FlowInstanceRow)
                .filter(
                    FlowInstanceRow.status == InstanceStatus.RUNNING.value,
                    FlowInstanceRow.wake_at.is_(None),
                )
                .all()
            )
            return [_instance_from_row(r) for r in rows]

    # =========================================================================
    # Completion groups
    # =========================================================================

    def _group_from_row(self, db: Session, row: CompletionGroupRow) -> CompletionGroup:
        members = (
            db.query(CompletionGroupMemberRow)
            .filter(CompletionGroupMemberRow.cause_id == row.cause_id)
            .all()
        )
        return CompletionGroup(
            cause_id=row.cause_id,
            members={m.instance_id for m in members},
            active={m.instance_id for m in members if m.is_active},
            pending_emissions=row.pending_emissions,
            continuations=list(row.continuations or []),
            opened=row.opened,
            resolved=row.resolved,
            created_at=row.created_at,
            resolved_at=row.resolved_at,
        )

    def get_group(self, cause_id: str) -> CompletionGroup | None:
        with self._session() as db:
            row = db.get(CompletionGroupRow, cause_id)
            return self._group_from_row(db, row) if row else None

    def save_group(self, group: CompletionGroup) -> None:
        with self._session() as db:
            row = db.get(CompletionGroupRow, group.cause_id)
            if row is None:
                row = CompletionGroupRow(cause_id=group.cause_id, created_at=group.created_at)
                db.add(row)
            row.pending_emissions = group.pending_emissions
            row.continuations = list(group.continuations)
            row.opened = group.opened
            row.resolved = group.resolved
            row.resolved_at = group.resolved_at

            existing = {
                m.instance_id: m
                for m in db.query(CompletionGroupMemberRow)
                .filter(CompletionGroupMemberRow.cause_id == group.cause_id)
                .all()
            }
            for instance_id in group.members:
                member = existing.get(instance_id)
                if member is None:
                    member = CompletionGroupMemberRow(cause_id=group.cause_id, instance_id=instance_id)
                    db.add(member)
                member.is_active = instance_id in group.active
            db.commit()

    def groups_for_instance(self, instance_id: str) -> list[CompletionGroup]:
        with self._session() as db:
            rows = (
                db.query(CompletionGroupRow)
                .join(
                    CompletionGroupMemberRow,
                    CompletionGroupMemberRow.cause_id == CompletionGroupRow.cause_id,
                )
                .filter(
                    CompletionGroupMemberRow.instance_id == instance_id,
                    CompletionGroupRow.resolved == False,  # noqa: E712
                )
                .order_by(CompletionGroupRow.cause_id)
                .all()
            )
            return [self._group_from_row(db, r) for r in rows]


def definition_summary(definition: FlowDefinition, active: bool) -> dict[str, Any]:
    """Row shape used by the CLI and the intake API listings."""
    return {
        "flow_id": definition.flow_id,
        "name": definition.name,
        "trigger": definition.trigger.kind,
        "steps": len(definition.steps),
        "goal": definition.goal is not None,
        "active": active,
    }
