"""activity ledger, partition catalog and notifications

Revision ID: 0001_activity_ledger
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_activity_ledger"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_column() -> sa.Column:
    # Avoid index=True here because we create explicit indexes below.
    return sa.Column("tenant_id", sa.String(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "ledger_partitions",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("kind", sa.String(), nullable=False, server_default="monthly"),
        sa.Column("range_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("range_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dropped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_ledger_partitions_state_range", "ledger_partitions", ["state", "range_start"])

    # List-partitioned by partition_key; monthly children are attached by the lifecycle manager.
    op.create_table(
        "activity_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        _tenant_column(),
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("parent_entity_type", sa.String(), nullable=True),
        sa.Column("parent_entity_id", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", "partition_key"),
        sa.CheckConstraint("(entity_type IS NULL) = (entity_id IS NULL)", name="ck_activity_events_entity_pair"),
        sa.CheckConstraint(
            "(parent_entity_type IS NULL) = (parent_entity_id IS NULL)",
            name="ck_activity_events_parent_pair",
        ),
        sa.CheckConstraint(
            "(archived AND archived_at IS NOT NULL) OR (NOT archived AND archived_at IS NULL)",
            name="ck_activity_events_archived_at",
        ),
        postgresql_partition_by="LIST (partition_key)",
    )
    op.create_index("ix_activity_events_tenant_id", "activity_events", ["tenant_id"])
    op.create_index("ix_activity_events_actor_id", "activity_events", ["actor_id"])
    op.create_index("ix_activity_events_type", "activity_events", ["type"])
    op.create_index(
        "ix_activity_events_tenant_entity",
        "activity_events",
        ["tenant_id", "entity_type", "entity_id", "occurred_at"],
    )
    op.create_index("ix_activity_events_tenant_occurred", "activity_events", ["tenant_id", "occurred_at"])
    op.create_index("ix_activity_events_partition_archived", "activity_events", ["partition_key", "archived"])
    # Rows of dropped months that must be retained move to this child. There is no DEFAULT child;
    # it would forbid DETACH PARTITION CONCURRENTLY.
    op.execute(
        "CREATE TABLE IF NOT EXISTS activity_events_exceptions PARTITION OF activity_events "
        "FOR VALUES IN ('exceptions')"
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_column(),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("recipient_kind", sa.String(), nullable=False, server_default="user"),
        sa.Column("sender", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("rich_content", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("related_entity_type", sa.String(), nullable=True),
        sa.Column("related_entity_id", sa.String(), nullable=True),
        sa.Column("channels", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("channel_fallback", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("delivery_status", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("delivery_state", sa.String(), nullable=False, server_default="pending"),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_event_id", sa.String(), nullable=True),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.CheckConstraint("priority BETWEEN 1 AND 9", name="ck_notifications_priority"),
        sa.CheckConstraint(
            "(read AND read_at IS NOT NULL) OR (NOT read AND read_at IS NULL)",
            name="ck_notifications_read_at",
        ),
        sa.CheckConstraint(
            "(dismissed AND dismissed_at IS NOT NULL) OR (NOT dismissed AND dismissed_at IS NULL)",
            name="ck_notifications_dismissed_at",
        ),
        sa.CheckConstraint("expires_at IS NULL OR expires_at > created_at", name="ck_notifications_expiry"),
    )
    op.create_index("ix_notifications_tenant_id", "notifications", ["tenant_id"])
    op.create_index("ix_notifications_rule_id", "notifications", ["rule_id"])
    op.create_index(
        "ix_notifications_inbox",
        "notifications",
        ["tenant_id", "recipient", "read", "dismissed", "priority"],
    )

    op.create_table(
        "notification_channel_deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_column(),
        sa.Column("notification_id", sa.String(), sa.ForeignKey("notifications.id"), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("notification_id", "channel", name="uq_notification_channel"),
    )
    op.create_index("ix_notification_channel_deliveries_tenant_id", "notification_channel_deliveries", ["tenant_id"])
    op.create_index(
        "ix_notification_channel_deliveries_notification_id",
        "notification_channel_deliveries",
        ["notification_id"],
    )
    op.create_index("ix_channel_deliveries_due", "notification_channel_deliveries", ["status", "next_attempt_at"])

    op.create_table(
        "notification_attempts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column(
            "delivery_id",
            sa.String(),
            sa.ForeignKey("notification_channel_deliveries.id"),
            nullable=False,
        ),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_notification_attempts_tenant_id", "notification_attempts", ["tenant_id"])
    op.create_index("ix_notification_attempts_delivery_id", "notification_attempts", ["delivery_id"])
    op.create_index("ix_notification_attempts_notification_id", "notification_attempts", ["notification_id"])

    op.create_table(
        "notification_templates",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_column(),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("required_variables", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("type", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False, server_default="info"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("channels", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("tenant_id", "key", name="uq_notification_templates_key"),
    )
    op.create_index("ix_notification_templates_tenant_id", "notification_templates", ["tenant_id"])

    op.create_table(
        "notification_rules",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_column(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("event_type_pattern", sa.String(), nullable=False),
        sa.Column("conditions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("template_key", sa.String(), nullable=False),
        sa.Column("recipient", sa.String(), nullable=True),
        sa.Column("recipient_kind", sa.String(), nullable=False, server_default="user"),
        sa.Column("recipient_from", sa.String(), nullable=True),
        sa.Column("channels", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("cooldown_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_notification_rules_tenant_id", "notification_rules", ["tenant_id"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.String(), primary_key=True),
        _tenant_column(),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("recipient_kind", sa.String(), nullable=False, server_default="user"),
        sa.Column("disabled_channels", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("muted_categories", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("global_opt_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint(
            "tenant_id",
            "recipient",
            "recipient_kind",
            name="uq_notification_preferences_recipient",
        ),
    )
    op.create_index("ix_notification_preferences_tenant_id", "notification_preferences", ["tenant_id"])

    op.create_table(
        "legal_holds",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_by_actor_id", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_legal_holds_tenant_id", "legal_holds", ["tenant_id"])
    op.create_index("ix_legal_holds_is_active", "legal_holds", ["is_active"])

    op.create_table(
        "activity_rollups",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dimension", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("hour", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_duration_ms", sa.Float(), nullable=True),
        sa.Column("summary_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_activity_rollups_tenant_id", "activity_rollups", ["tenant_id"])
    op.create_index("ix_activity_rollups_window", "activity_rollups", ["tenant_id", "window_start", "window_end"])

    op.create_table(
        "lifecycle_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("task", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("details_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.create_index("ix_lifecycle_runs_task", "lifecycle_runs", ["task"])

    # The exceptions partition is catalogued once; monthly rows are added by the lifecycle manager.
    op.execute(
        "INSERT INTO ledger_partitions (key, kind, state, created_at, updated_at) "
        "VALUES ('exceptions', 'exceptions', 'active', now(), now()) ON CONFLICT (key) DO NOTHING"
    )


def downgrade() -> None:
    op.drop_index("ix_lifecycle_runs_task", table_name="lifecycle_runs")
    op.drop_table("lifecycle_runs")
    op.drop_index("ix_activity_rollups_window", table_name="activity_rollups")
    op.drop_index("ix_activity_rollups_tenant_id", table_name="activity_rollups")
    op.drop_table("activity_rollups")
    op.drop_index("ix_legal_holds_is_active", table_name="legal_holds")
    op.drop_index("ix_legal_holds_tenant_id", table_name="legal_holds")
    op.drop_table("legal_holds")
    op.drop_index("ix_notification_preferences_tenant_id", table_name="notification_preferences")
    op.drop_table("notification_preferences")
    op.drop_index("ix_notification_rules_tenant_id", table_name="notification_rules")
    op.drop_table("notification_rules")
    op.drop_index("ix_notification_templates_tenant_id", table_name="notification_templates")
    op.drop_table("notification_templates")
    op.drop_index("ix_notification_attempts_notification_id", table_name="notification_attempts")
    op.drop_index("ix_notification_attempts_delivery_id", table_name="notification_attempts")
    op.drop_index("ix_notification_attempts_tenant_id", table_name="notification_attempts")
    op.drop_table("notification_attempts")
    op.drop_index("ix_channel_deliveries_due", table_name="notification_channel_deliveries")
    op.drop_index(
        "ix_notification_channel_deliveries_notification_id",
        table_name="notification_channel_deliveries",
    )
    op.drop_index("ix_notification_channel_deliveries_tenant_id", table_name="notification_channel_deliveries")
    op.drop_table("notification_channel_deliveries")
    op.drop_index("ix_notifications_inbox", table_name="notifications")
    op.drop_index("ix_notifications_rule_id", table_name="notifications")
    op.drop_index("ix_notifications_tenant_id", table_name="notifications")
    op.drop_table("notifications")
    # Dropping the parent drops every attached child, the exceptions child included.
    op.drop_table("activity_events")
    op.drop_index("ix_ledger_partitions_state_range", table_name="ledger_partitions")
    op.drop_table("ledger_partitions")
    op.drop_table("tenants")
