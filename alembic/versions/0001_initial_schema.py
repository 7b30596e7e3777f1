"""Initial ControlGate schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

# Enums are stored as their values in VARCHAR(32) columns (native_enum=False)
ENUM = sa.String(length=32)


def upgrade() -> None:
    """Create control plane tables."""
    op.create_table(
        "agents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("level", ENUM, nullable=False, server_default="SPC"),
        sa.Column("status", ENUM, nullable=False, server_default="idle"),
        sa.Column("session_key", sa.String(length=255), nullable=True),
        sa.Column("thinking_model", sa.String(length=255), nullable=True),
        sa.Column("fallback_model", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("name", name="uq_agents_name"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", ENUM, nullable=False, server_default="inbox"),
        sa.Column("priority", ENUM, nullable=False, server_default="medium"),
        sa.Column(
            "assignee_ids", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column("tags", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("planning_status", ENUM, nullable=False, server_default="none"),
        sa.Column("created_by", sa.String(length=255), nullable=False, server_default="user"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_tasks_status", "tasks", ["status", "updated_at"])

    op.create_table(
        "dispatch_lanes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("target_agent_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=400), nullable=True),
        sa.Column("status", ENUM, nullable=False, server_default="pending"),
        sa.Column("runner", sa.String(length=255), nullable=True),
        sa.Column("run_id", sa.String(length=255), nullable=True),
        sa.Column("result_preview", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_dispatch_idempotency"),
    )
    op.create_index("idx_dispatch_status_requested", "dispatch_lanes", ["status", "requested_at"])
    op.create_index(
        "idx_dispatch_task_target", "dispatch_lanes", ["task_id", "target_agent_id", "status"]
    )
    op.create_index(
        "uq_dispatch_active_target",
        "dispatch_lanes",
        ["task_id", "target_agent_id"],
        unique=True,
        postgresql_where=sa.text(
            "status IN ('pending', 'running') AND target_agent_id IS NOT NULL"
        ),
    )
    op.create_index(
        "uq_dispatch_active_default",
        "dispatch_lanes",
        ["task_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running') AND target_agent_id IS NULL"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("target_agent_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("source_task_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("source_message_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_by", sa.String(length=255), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_notifications_undelivered", "notifications", ["delivered", "created_at"])
    op.create_index("idx_notifications_target", "notifications", ["target_agent_id", "delivered"])

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("agent_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reason", ENUM, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("task_id", "agent_id", name="uq_subscription_task_agent"),
    )
    op.create_index("idx_subscriptions_agent", "subscriptions", ["agent_id"])

    op.create_table(
        "leases",
        sa.Column("key", sa.String(length=255), primary_key=True),
        sa.Column("owner", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("channel", sa.String(length=255), nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("from_agent_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("from_user", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("mentions", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_messages_channel", "messages", ["channel", "created_at"])
    op.create_index("idx_messages_task", "messages", ["task_id", "created_at"])

    op.create_table(
        "activities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", ENUM, nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("agent_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_activities_task", "activities", ["task_id", "created_at"])
    op.create_index("idx_activities_created", "activities", ["created_at"])

    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=255), primary_key=True),
        sa.Column("value", postgresql.JSONB, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    """Drop control plane tables."""
    op.drop_table("settings")

    op.drop_index("idx_activities_created", table_name="activities")
    op.drop_index("idx_activities_task", table_name="activities")
    op.drop_table("activities")

    op.drop_index("idx_messages_task", table_name="messages")
    op.drop_index("idx_messages_channel", table_name="messages")
    op.drop_table("messages")

    op.drop_table("leases")

    op.drop_index("idx_subscriptions_agent", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("idx_notifications_target", table_name="notifications")
    op.drop_index("idx_notifications_undelivered", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("uq_dispatch_active_default", table_name="dispatch_lanes")
    op.drop_index("uq_dispatch_active_target", table_name="dispatch_lanes")
    op.drop_index("idx_dispatch_task_target", table_name="dispatch_lanes")
    op.drop_index("idx_dispatch_status_requested", table_name="dispatch_lanes")
    op.drop_table("dispatch_lanes")

    op.drop_index("idx_tasks_status", table_name="tasks")
    op.drop_table("tasks")

    op.drop_table("agents")
