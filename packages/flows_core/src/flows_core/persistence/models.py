"""
Flow Engine Database Models

Tables owned by the flow engine.

Tables:
- flow_definitions: registered flows (JSON definition, active flag, At fire marker)
- flow_instances: one row per contact run through a flow
- completion_groups: aggregation state per cause
- completion_group_members: membership of instances in groups
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

FlowsBase = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores UTC, always hands back timezone-aware datetimes (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class FlowModelMixin:
    """Common fields for all flow engine models."""

    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class FlowDefinitionRow(FlowsBase, FlowModelMixin):
    __tablename__ = "flow_definitions"

    flow_id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=True)
    trigger_kind = Column(String(30), nullable=False)
    definition = Column(JSONType, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    at_fired_at = Column(UTCDateTime, nullable=True)  # At trigger already fanned out

    __table_args__ = (Index("idx_flow_definitions_active_trigger", "is_active", "trigger_kind"),)


class FlowInstanceRow(FlowsBase, FlowModelMixin):
    """
    A contact's run through a flow.

    At most one active row exists per (flow_id, contact_id); the partial
    unique index enforces it across processes.
    """

    __tablename__ = "flow_instances"

    instance_id = Column(String(36), primary_key=True)
    flow_id = Column(String(100), nullable=False)
    contact_id = Column(String(100), nullable=False)
    cause_id = Column(String(36), nullable=False)
    status = Column(String(30), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    pointer = Column(JSONType, nullable=False, default=list)
    wake_at = Column(UTCDateTime, nullable=True)
    waiting_on = Column(JSONType, nullable=True)
    variables = Column(JSONType, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    entered_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    finished_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_flow_instances_one_active",
            "flow_id",
            "contact_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_flow_instances_contact_active", "contact_id", "is_active"),
        Index("idx_flow_instances_status", "status"),
        Index("idx_flow_instances_wake_at", "wake_at"),
    )


class CompletionGroupRow(FlowsBase, FlowModelMixin):
    __tablename__ = "completion_groups"

    cause_id = Column(String(36), primary_key=True)
    pending_emissions = Column(Integer, nullable=False, default=0)
    continuations = Column(JSONType, nullable=False, default=list)
    opened = Column(Boolean, nullable=False, default=False)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (Index("idx_completion_groups_resolved", "resolved"),)


class CompletionGroupMemberRow(FlowsBase):
    __tablename__ = "completion_group_members"

    cause_id = Column(String(36), primary_key=True)
    instance_id = Column(String(36), primary_key=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_completion_group_members_instance", "instance_id", "is_active"),)
