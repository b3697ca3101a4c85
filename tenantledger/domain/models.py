from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every dialect.

    PostgreSQL stores ``timestamptz`` natively. SQLite has no zone support, so values are
    normalized to naive UTC on the way in and re-tagged as UTC on the way out, which keeps
    string comparisons and microsecond precision intact.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted; attach a timezone")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere.
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class TenantScoped:
    """Marker mixin: every query against a subclass carries the session's tenant predicate."""

    tenant_id: Mapped[str] = mapped_column(String, index=True, nullable=False)


class Tenant(Base):
    __tablename__ = "tenants"

    # Tenants are onboarded out-of-band and only ever deactivated.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class LedgerPartition(Base):
    __tablename__ = "ledger_partitions"
    __table_args__ = (
        Index("ix_ledger_partitions_state_range", "state", "range_start"),
    )

    # YYYY_MM for monthly partitions, "exceptions" for the long-lived exempt partition.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, default="monthly", nullable=False)
    # Half-open [range_start, range_end); both null for the exceptions partition.
    range_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    range_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    state: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dropped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Consecutive transition failures; reset on the next successful transition.
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class ActivityEvent(TenantScoped, Base):
    __tablename__ = "activity_events"
    __table_args__ = (
        CheckConstraint(
            "(entity_type IS NULL) = (entity_id IS NULL)",
            name="ck_activity_events_entity_pair",
        ),
        CheckConstraint(
            "(parent_entity_type IS NULL) = (parent_entity_id IS NULL)",
            name="ck_activity_events_parent_pair",
        ),
        CheckConstraint(
            "(archived AND archived_at IS NOT NULL) OR (NOT archived AND archived_at IS NULL)",
            name="ck_activity_events_archived_at",
        ),
        Index("ix_activity_events_tenant_entity", "tenant_id", "entity_type", "entity_id", "occurred_at"),
        Index("ix_activity_events_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_activity_events_partition_archived", "partition_key", "archived"),
    )

    # partition_key is part of the key so PostgreSQL can list-partition on it.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Written by the partition router; rewritten only when an exempt row moves to "exceptions".
    partition_key: Mapped[str] = mapped_column(String, primary_key=True)
    actor_type: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column("type", String, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    parent_entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    parent_entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, default=dict, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Execution time of the recorded action, when the caller measured one.
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Notification(TenantScoped, Base):
    __tablename__ = "notifications"
    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 9", name="ck_notifications_priority"),
        CheckConstraint(
            "(read AND read_at IS NOT NULL) OR (NOT read AND read_at IS NULL)",
            name="ck_notifications_read_at",
        ),
        CheckConstraint(
            "(dismissed AND dismissed_at IS NOT NULL) OR (NOT dismissed AND dismissed_at IS NULL)",
            name="ck_notifications_dismissed_at",
        ),
        CheckConstraint("expires_at IS NULL OR expires_at > created_at", name="ck_notifications_expiry"),
        Index("ix_notifications_inbox", "tenant_id", "recipient", "read", "dismissed", "priority"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    recipient: Mapped[str] = mapped_column(String, nullable=False)
    recipient_kind: Mapped[str] = mapped_column(String, nullable=False, default="user")
    sender: Mapped[str | None] = mapped_column(String, nullable=True)
    notification_type: Mapped[str] = mapped_column("type", String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    rich_content: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    related_entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channels: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    # True when preferences removed every requested channel and the record fell back to web.
    channel_fallback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Derived from delivery rows after every channel transition.
    delivery_status: Mapped[dict[str, str]] = mapped_column(JSONDocument, nullable=False, default=dict)
    delivery_state: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dismissed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dismissed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    source_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    rule_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class NotificationChannelDelivery(TenantScoped, Base):
    __tablename__ = "notification_channel_deliveries"
    __table_args__ = (
        UniqueConstraint("notification_id", "channel", name="uq_notification_channel"),
        Index("ix_channel_deliveries_due", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    notification_id: Mapped[str] = mapped_column(String, ForeignKey("notifications.id"), index=True)
    channel: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class NotificationAttempt(TenantScoped, Base):
    __tablename__ = "notification_attempts"

    # Immutable per-attempt history for delivery forensics.
    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    delivery_id: Mapped[str] = mapped_column(String, ForeignKey("notification_channel_deliveries.id"), index=True)
    notification_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String, nullable=False)
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class NotificationTemplate(TenantScoped, Base):
    __tablename__ = "notification_templates"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_notification_templates_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String, nullable=False)
    # Title and message carry {{ variable }} placeholders.
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    required_variables: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    notification_type: Mapped[str | None] = mapped_column("type", String, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="info")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    channels: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class NotificationRule(TenantScoped, Base):
    __tablename__ = "notification_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Exact event type or a prefix ending in "*", e.g. "invoice.*".
    event_type_pattern: Mapped[str] = mapped_column(String, nullable=False)
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    template_key: Mapped[str] = mapped_column(String, nullable=False)
    recipient: Mapped[str | None] = mapped_column(String, nullable=True)
    recipient_kind: Mapped[str] = mapped_column(String, nullable=False, default="user")
    # "actor" or "payload.<path>"; resolved per event when recipient is null.
    recipient_from: Mapped[str | None] = mapped_column(String, nullable=True)
    channels: Mapped[list[str] | None] = mapped_column(JSONDocument, nullable=True)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class NotificationPreference(TenantScoped, Base):
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("tenant_id", "recipient", "recipient_kind", name="uq_notification_preferences_recipient"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    recipient: Mapped[str] = mapped_column(String, nullable=False)
    recipient_kind: Mapped[str] = mapped_column(String, nullable=False, default="user")
    disabled_channels: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    muted_categories: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    global_opt_out: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class LegalHold(TenantScoped, Base):
    __tablename__ = "legal_holds"

    # Events of a tenant under an active hold survive partition drops.
    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class ActivityRollup(TenantScoped, Base):
    __tablename__ = "activity_rollups"
    __table_args__ = (
        Index("ix_activity_rollups_window", "tenant_id", "window_start", "window_end"),
    )

    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # type_hour, actor or summary.
    dimension: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    summary_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class LifecycleRun(Base):
    __tablename__ = "lifecycle_runs"

    # One row per scheduled lifecycle or rollup execution.
    id: Mapped[int] = mapped_column(AutoId, primary_key=True, autoincrement=True)
    task: Mapped[str] = mapped_column(String, nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
