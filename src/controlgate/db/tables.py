"""SQLAlchemy table definitions."""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from controlgate.db.base import Base
from controlgate.db.types import UTCDateTime
from controlgate.models.enums import (
    ActivityType,
    AgentLevel,
    AgentStatus,
    LaneStatus,
    PlanningStatus,
    SubscriptionReason,
    TaskPriority,
    TaskStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_TARGETED = "status IN ('pending', 'running') AND target_agent_id IS NOT NULL"
_ACTIVE_DEFAULT = "status IN ('pending', 'running') AND target_agent_id IS NULL"


def _enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (not member names) as portable VARCHARs."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class AgentTable(Base):
    """Agents table - execution targets reachable through a session."""

    __tablename__ = "agents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    level: Mapped[AgentLevel] = mapped_column(_enum(AgentLevel), nullable=False, default=AgentLevel.SPC)
    status: Mapped[AgentStatus] = mapped_column(
        _enum(AgentStatus), nullable=False, default=AgentStatus.IDLE
    )

    # Transport session, e.g. agent:<runtime-id>:main
    session_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    thinking_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fallback_model: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class TaskTable(Base):
    """Tasks table - board items that dispatch lanes execute."""

    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus), nullable=False, default=TaskStatus.INBOX
    )
    priority: Mapped[TaskPriority] = mapped_column(
        _enum(TaskPriority), nullable=False, default=TaskPriority.MEDIUM
    )

    # Ordered agent ids (as strings); the first assignee is the default dispatch target
    assignee_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    planning_status: Mapped[PlanningStatus] = mapped_column(
        _enum(PlanningStatus), nullable=False, default=PlanningStatus.NONE
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="user")

    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (Index("idx_tasks_status", "status", "updated_at"),)


class DispatchLaneTable(Base):
    """Dispatch lanes table - one execution request per (task, target agent)."""

    __tablename__ = "dispatch_lanes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    task_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    target_agent_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Already suffixed with the target (":<agent id>" or ":default")
    idempotency_key: Mapped[str | None] = mapped_column(String(400), nullable=True)

    status: Mapped[LaneStatus] = mapped_column(
        _enum(LaneStatus), nullable=False, default=LaneStatus.PENDING
    )
    runner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    run_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_dispatch_idempotency"),
        # claim_next scans pending lanes oldest-first
        Index("idx_dispatch_status_requested", "status", "requested_at"),
        # enqueue dedupe and task reconciliation
        Index("idx_dispatch_task_target", "task_id", "target_agent_id", "status"),
        # at most one pending/running lane per (task, target)
        Index(
            "uq_dispatch_active_target",
            "task_id",
            "target_agent_id",
            unique=True,
            postgresql_where=text(_ACTIVE_TARGETED),
            sqlite_where=text(_ACTIVE_TARGETED),
        ),
        Index(
            "uq_dispatch_active_default",
            "task_id",
            unique=True,
            postgresql_where=text(_ACTIVE_DEFAULT),
            sqlite_where=text(_ACTIVE_DEFAULT),
        ),
    )


class NotificationTable(Base):
    """Notifications table - pending cross-agent messages."""

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    target_agent_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source_task_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    source_message_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # TTL claim; a claim older than the TTL is treated as absent
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_notifications_undelivered", "delivered", "created_at"),
        Index("idx_notifications_target", "target_agent_id", "delivered"),
    )


class SubscriptionTable(Base):
    """Thread subscriptions - which agents follow which task."""

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    task_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    agent_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    reason: Mapped[SubscriptionReason] = mapped_column(_enum(SubscriptionReason), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("task_id", "agent_id", name="uq_subscription_task_agent"),
        Index("idx_subscriptions_agent", "agent_id"),
    )


class LeaseTable(Base):
    """Named leases - one row per key, used for leader election."""

    __tablename__ = "leases"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    renewed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class MessageTable(Base):
    """Messages posted to HQ or to a task thread."""

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    channel: Mapped[str] = mapped_column(String(255), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    from_agent_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    from_user: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    mentions: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    # Set once the leader's HQ responder has taken the message
    handled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_messages_channel", "channel", "created_at"),
        Index("idx_messages_task", "task_id", "created_at"),
    )


class ActivityTable(Base):
    """Activity feed."""

    __tablename__ = "activities"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    type: Mapped[ActivityType] = mapped_column(_enum(ActivityType), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    agent_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_activities_task", "task_id", "created_at"),
        Index("idx_activities_created", "created_at"),
    )


class SettingTable(Base):
    """Key/value settings (automation config, dispatch probes)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
