"""Notification dispatcher.

Creates inbox records, fans each notification out into one delivery row per channel and
drives those rows to a terminal status. Channels fail independently: a failing email never
blocks the in-app (web) record. Retries use exponential backoff with deterministic jitter
and stop after ``notify_max_retries`` retries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.config import get_settings
from tenantledger.core.errors import DeliveryFailure, NotFoundError, ValidationError
from tenantledger.domain.models import Notification, NotificationAttempt, NotificationChannelDelivery, utc_now
from tenantledger.domain.vocab import (
    CHANNEL_WEB,
    CHANNELS,
    DELIVERY_CANCELLED,
    DELIVERY_DELIVERED,
    DELIVERY_EXPIRED,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_RETRYING,
    OPEN_DELIVERY_STATUSES,
    STATE_ALL_FAILED,
    STATE_CANCELLED,
    STATE_DELIVERED,
    STATE_EXPIRED,
    STATE_PARTIAL,
    STATE_PENDING,
    NotificationCategory,
    RecipientKind,
)
from tenantledger.persistence.db import dialect_name
from tenantledger.persistence.guards import TenantContext, system_context, system_session, tenant_session
from tenantledger.services.background import spawn
from tenantledger.services.notifications.channels import ChannelMessage, get_channel_sender
from tenantledger.services.notifications.preferences import filter_channels, get_preference
from tenantledger.services.notifications.queue import enqueue_channel_delivery
from tenantledger.services.tenants import ensure_tenant_active


logger = logging.getLogger(__name__)

# Extra lease on top of the relay timeout while an attempt is in flight.
_LEASE_MARGIN_MS = 5000


class NotificationDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recipient: str = Field(min_length=1, max_length=128)
    recipient_kind: RecipientKind = "user"
    sender: str | None = Field(default=None, max_length=128)
    type: str = Field(default="general", min_length=1, max_length=64)
    category: NotificationCategory = "info"
    # 1 is the lowest priority, 9 the most urgent.
    priority: int = Field(default=5, ge=1, le=9)
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1, max_length=10000)
    rich_content: dict[str, Any] | None = None
    related_entity_type: str | None = Field(default=None, max_length=64)
    related_entity_id: str | None = Field(default=None, max_length=128)
    channels: list[str] = Field(default_factory=lambda: [CHANNEL_WEB], min_length=1)
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None

    @field_validator("channels")
    @classmethod
    def _check_channels(cls, value: list[str]) -> list[str]:
        unknown = [channel for channel in value if channel not in CHANNELS]
        if unknown:
            raise ValueError(f"unknown channels: {', '.join(unknown)}")
        return list(dict.fromkeys(value))

    @field_validator("scheduled_for", "expires_at")
    @classmethod
    def _check_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("timestamps must include a timezone offset")
        return value

    @model_validator(mode="after")
    def _check_related(self) -> "NotificationDraft":
        if (self.related_entity_type is None) != (self.related_entity_id is None):
            raise ValueError("related_entity_type and related_entity_id must be provided together")
        return self


def parse_notification_draft(data: dict[str, Any]) -> NotificationDraft:
    try:
        return NotificationDraft.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
            for error in exc.errors()
        ]
        raise ValidationError("Invalid notification", details={"errors": errors}) from exc


@dataclass(frozen=True)
class DeliveryOutcome:
    delivery_id: str
    channel: str
    status: str
    attempt_no: int
    # Set when the delivery should be tried again after this many milliseconds.
    retry_in_ms: int | None = None
    attempted: bool = True
    error: str | None = None


@dataclass(frozen=True)
class NotificationPage:
    items: list[Notification]
    next_offset: int | None


def retry_backoff_ms(*, delivery_id: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter keeps tests reproducible and avoids stampedes.
    settings = get_settings()
    base = max(1, int(settings.notify_backoff_ms))
    cap = max(base, int(settings.notify_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{delivery_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % (backoff // 4 + 1)
    return min(cap, backoff + jitter)


def derive_delivery_state(statuses: dict[str, str]) -> str:
    # Aggregate state over the per-channel map.
    values = set(statuses.values())
    if not values or values & set(OPEN_DELIVERY_STATUSES):
        return STATE_PENDING
    if values == {DELIVERY_DELIVERED}:
        return STATE_DELIVERED
    if DELIVERY_DELIVERED in values:
        return STATE_PARTIAL
    if values == {DELIVERY_FAILED}:
        return STATE_ALL_FAILED
    if DELIVERY_EXPIRED in values:
        return STATE_EXPIRED
    if DELIVERY_CANCELLED in values:
        return STATE_CANCELLED
    return STATE_ALL_FAILED


async def _sync_delivery_state(session: AsyncSession, notification: Notification) -> None:
    rows = (
        await session.execute(
            select(NotificationChannelDelivery.channel, NotificationChannelDelivery.status).where(
                NotificationChannelDelivery.notification_id == notification.id
            )
        )
    ).all()
    statuses = {str(channel): str(status) for channel, status in rows}
    notification.delivery_status = statuses
    notification.delivery_state = derive_delivery_state(statuses)
    notification.updated_at = utc_now()


async def _close_open_deliveries(session: AsyncSession, notification: Notification, status: str) -> int:
    now = utc_now()
    result = await session.execute(
        update(NotificationChannelDelivery)
        .where(
            NotificationChannelDelivery.notification_id == notification.id,
            NotificationChannelDelivery.status.in_(OPEN_DELIVERY_STATUSES),
        )
        .values(status=status, next_attempt_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await _sync_delivery_state(session, notification)
    return int(result.rowcount or 0)


async def create_notification(
    ctx: TenantContext,
    draft: NotificationDraft | dict[str, Any],
    *,
    source_event_id: str | None = None,
    rule_id: str | None = None,
    dispatch: bool = True,
) -> Notification:
    """Persist a notification with one pending delivery per channel and start dispatching.

    Recipient preferences narrow the channel list before fanout. When they remove every
    requested channel the record falls back to web and ``channel_fallback`` is set. Deliveries
    of scheduled notifications wait until ``scheduled_for``.
    """
    if isinstance(draft, dict):
        draft = parse_notification_draft(draft)
    now = utc_now()
    if draft.expires_at is not None and draft.expires_at <= now:
        raise ValidationError("expires_at must be in the future", details={"expires_at": draft.expires_at.isoformat()})
    if draft.expires_at is not None and draft.scheduled_for is not None and draft.scheduled_for >= draft.expires_at:
        raise ValidationError("scheduled_for must be earlier than expires_at")
    due_at = draft.scheduled_for if draft.scheduled_for is not None and draft.scheduled_for > now else now
    async with tenant_session(ctx) as session:
        await ensure_tenant_active(session, ctx.tenant_id)
        preference = await get_preference(session, draft.recipient, draft.recipient_kind)
        channels = filter_channels(draft.channels, category=draft.category, preference=preference)
        fallback = not channels
        if fallback:
            channels = [CHANNEL_WEB]
        notification = Notification(
            id=uuid4().hex,
            tenant_id=ctx.tenant_id,
            recipient=draft.recipient,
            recipient_kind=draft.recipient_kind,
            sender=draft.sender or ctx.actor_id,
            notification_type=draft.type,
            category=draft.category,
            priority=draft.priority,
            title=draft.title,
            message=draft.message,
            rich_content=draft.rich_content,
            related_entity_type=draft.related_entity_type,
            related_entity_id=draft.related_entity_id,
            channels=channels,
            channel_fallback=fallback,
            delivery_status={channel: DELIVERY_PENDING for channel in channels},
            delivery_state=STATE_PENDING,
            read=False,
            dismissed=False,
            scheduled_for=draft.scheduled_for,
            expires_at=draft.expires_at,
            source_event_id=source_event_id,
            rule_id=rule_id,
            created_at=now,
            updated_at=now,
        )
        session.add(notification)
        # Flush the parent first; deliveries reference it by foreign key.
        await session.flush()
        deliveries = [
            NotificationChannelDelivery(
                id=uuid4().hex,
                tenant_id=ctx.tenant_id,
                notification_id=notification.id,
                channel=channel,
                status=DELIVERY_PENDING,
                attempt_count=0,
                next_attempt_at=due_at,
                created_at=now,
                updated_at=now,
            )
            for channel in channels
        ]
        session.add_all(deliveries)
        await session.commit()
    logger.info(
        "notification_created tenant_id=%s notification_id=%s channels=%s",
        ctx.tenant_id,
        notification.id,
        ",".join(channels),
    )
    if dispatch:
        schedule_deliveries(ctx.tenant_id, [delivery.id for delivery in deliveries], due_at=due_at)
    return notification


def schedule_deliveries(tenant_id: str, delivery_ids: list[str], *, due_at: datetime | None = None) -> None:
    # Hand deliveries to the configured executor; future-dated work is left to the sweep in inline mode.
    settings = get_settings()
    now = utc_now()
    defer_ms = 0
    if due_at is not None and due_at > now:
        defer_ms = int((due_at - now).total_seconds() * 1000)
    if settings.notify_execution_mode == "queue":
        for delivery_id in delivery_ids:
            spawn(
                enqueue_channel_delivery(tenant_id=tenant_id, delivery_id=delivery_id, defer_ms=defer_ms),
                name=f"enqueue:{delivery_id}",
            )
        return
    if defer_ms > 0:
        return
    for delivery_id in delivery_ids:
        spawn(drive_channel_delivery(tenant_id, delivery_id), name=f"deliver:{delivery_id}")


async def drive_channel_delivery(tenant_id: str, delivery_id: str) -> DeliveryOutcome | None:
    """Inline executor: attempt, back off and retry until the delivery is terminal."""
    outcome: DeliveryOutcome | None = None
    while True:
        result = await attempt_channel_delivery(tenant_id, delivery_id)
        if result is None:
            return outcome
        if result.attempted:
            outcome = result
        if result.retry_in_ms is None:
            return outcome
        if not result.attempted and result.retry_in_ms > get_settings().notify_backoff_max_ms:
            # Far-future work belongs to the sweep, not to a sleeping task.
            return outcome
        await asyncio.sleep(result.retry_in_ms / 1000.0)


async def attempt_channel_delivery(tenant_id: str, delivery_id: str) -> DeliveryOutcome | None:
    """Make one attempt for one channel delivery.

    Returns ``None`` when the delivery no longer exists or is already terminal. Dismissal and
    expiry are re-checked before every attempt.
    """
    settings = get_settings()
    ctx = system_context(tenant_id)
    async with tenant_session(ctx) as session:
        stmt = select(NotificationChannelDelivery).where(
            NotificationChannelDelivery.id == delivery_id,
            NotificationChannelDelivery.status.in_(OPEN_DELIVERY_STATUSES),
        )
        if dialect_name(session) == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        delivery = (await session.execute(stmt)).scalar_one_or_none()
        if delivery is None:
            return None
        notification = await session.get(Notification, delivery.notification_id)
        if notification is None:
            return None
        now = utc_now()
        if notification.dismissed:
            await _close_open_deliveries(session, notification, DELIVERY_CANCELLED)
            await session.commit()
            return DeliveryOutcome(delivery.id, delivery.channel, DELIVERY_CANCELLED, delivery.attempt_count, attempted=False)
        if notification.expires_at is not None and notification.expires_at <= now:
            await _close_open_deliveries(session, notification, DELIVERY_EXPIRED)
            await session.commit()
            return DeliveryOutcome(delivery.id, delivery.channel, DELIVERY_EXPIRED, delivery.attempt_count, attempted=False)
        if delivery.next_attempt_at is not None and delivery.next_attempt_at > now:
            remaining_ms = int((delivery.next_attempt_at - now).total_seconds() * 1000) + 1
            return DeliveryOutcome(
                delivery.id, delivery.channel, delivery.status, delivery.attempt_count,
                retry_in_ms=remaining_ms, attempted=False,
            )

        attempt_no = int(delivery.attempt_count or 0) + 1
        message = ChannelMessage(
            tenant_id=tenant_id,
            notification_id=notification.id,
            delivery_id=delivery.id,
            channel=delivery.channel,
            recipient=notification.recipient,
            recipient_kind=notification.recipient_kind,
            title=notification.title,
            message=notification.message,
            category=notification.category,
            priority=notification.priority,
            attempt_no=attempt_no,
            rich_content=notification.rich_content,
            related_entity_type=notification.related_entity_type,
            related_entity_id=notification.related_entity_id,
        )
        attempt = NotificationAttempt(
            tenant_id=tenant_id,
            delivery_id=delivery.id,
            notification_id=notification.id,
            channel=delivery.channel,
            attempt_no=attempt_no,
            started_at=now,
            outcome="running",
        )
        session.add(attempt)
        # Lease the row so sweeps skip it while the send is in flight.
        delivery.next_attempt_at = now + timedelta(milliseconds=settings.notify_relay_timeout_ms + _LEASE_MARGIN_MS)
        await session.commit()

        error: str | None = None
        retriable = True
        try:
            await get_channel_sender(delivery.channel)(message)
        except DeliveryFailure as exc:
            error, retriable = exc.message, exc.retriable
        except Exception as exc:  # noqa: BLE001 - unknown sender errors are treated as transient.
            error = f"{exc.__class__.__name__}: {exc}"

        finished = utc_now()
        await session.refresh(delivery)
        await session.refresh(notification)
        attempt.finished_at = finished
        attempt.outcome = "success" if error is None else "failure"
        attempt.error = error
        delivery.attempt_count = attempt_no
        retry_in_ms: int | None = None
        if delivery.status not in OPEN_DELIVERY_STATUSES:
            # Dismissed or expired while the send was in flight; keep the terminal status.
            status = delivery.status
        elif error is None:
            status = DELIVERY_DELIVERED
            delivery.delivered_at = finished
            delivery.next_attempt_at = None
            delivery.last_error = None
        elif not retriable or attempt_no > settings.notify_max_retries:
            status = DELIVERY_FAILED
            delivery.next_attempt_at = None
            delivery.last_error = error
        else:
            status = DELIVERY_RETRYING
            retry_in_ms = retry_backoff_ms(delivery_id=delivery.id, attempt_no=attempt_no)
            delivery.next_attempt_at = finished + timedelta(milliseconds=retry_in_ms)
            delivery.last_error = error
        delivery.status = status
        delivery.updated_at = finished
        await session.flush()
        await _sync_delivery_state(session, notification)
        await session.commit()

    if error is not None:
        logger.warning(
            "notification_delivery_attempt_failed tenant_id=%s delivery_id=%s channel=%s attempt=%s status=%s error=%s",
            tenant_id,
            delivery_id,
            message.channel,
            attempt_no,
            status,
            error,
        )
    return DeliveryOutcome(delivery_id, message.channel, status, attempt_no, retry_in_ms=retry_in_ms, error=error)


async def _load_notification(session: AsyncSession, notification_id: str) -> Notification:
    notification = (
        await session.execute(
            select(Notification)
            .where(Notification.id == notification_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if notification is None:
        raise NotFoundError("Notification not found", details={"notification_id": notification_id})
    return notification


async def get_notification(ctx: TenantContext, notification_id: str) -> Notification:
    async with tenant_session(ctx) as session:
        return await _load_notification(session, notification_id)


async def mark_read(ctx: TenantContext, notification_id: str) -> Notification:
    # Idempotent; read and read_at change together in one conditional statement.
    async with tenant_session(ctx) as session:
        notification = await _load_notification(session, notification_id)
        if not notification.read:
            now = utc_now()
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.read.is_(False))
                .values(read=True, read_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            notification = await _load_notification(session, notification_id)
        return notification


async def mark_dismissed(ctx: TenantContext, notification_id: str) -> Notification:
    # Dismissal cancels channels that have not been delivered yet.
    async with tenant_session(ctx) as session:
        notification = await _load_notification(session, notification_id)
        if not notification.dismissed:
            now = utc_now()
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.dismissed.is_(False))
                .values(dismissed=True, dismissed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            notification = await _load_notification(session, notification_id)
            await _close_open_deliveries(session, notification, DELIVERY_CANCELLED)
            await session.commit()
        return notification


def _inbox_filter(stmt, *, recipient: str, recipient_kind: str | None, unread_only: bool, include_dismissed: bool):
    stmt = stmt.where(Notification.recipient == recipient)
    if recipient_kind:
        stmt = stmt.where(Notification.recipient_kind == recipient_kind)
    if unread_only:
        now = utc_now()
        stmt = stmt.where(
            Notification.read.is_(False),
            Notification.dismissed.is_(False),
            or_(Notification.expires_at.is_(None), Notification.expires_at > now),
            or_(Notification.scheduled_for.is_(None), Notification.scheduled_for <= now),
        )
    elif not include_dismissed:
        stmt = stmt.where(Notification.dismissed.is_(False))
    return stmt


async def list_notifications(
    ctx: TenantContext,
    *,
    recipient: str,
    recipient_kind: str | None = None,
    unread_only: bool = False,
    include_dismissed: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> NotificationPage:
    """Recipient inbox, most urgent first, newest first within one priority."""
    limit = max(1, min(int(limit), get_settings().ledger_query_max_limit))
    offset = max(0, int(offset))
    async with tenant_session(ctx) as session:
        stmt = _inbox_filter(
            select(Notification),
            recipient=recipient,
            recipient_kind=recipient_kind,
            unread_only=unread_only,
            include_dismissed=include_dismissed,
        )
        stmt = stmt.order_by(Notification.priority.desc(), Notification.created_at.desc(), Notification.id.desc())
        rows = list((await session.execute(stmt.offset(offset).limit(limit + 1))).scalars().all())
    next_offset = offset + limit if len(rows) > limit else None
    return NotificationPage(items=rows[:limit], next_offset=next_offset)


async def unread_count(ctx: TenantContext, *, recipient: str, recipient_kind: str | None = None) -> int:
    async with tenant_session(ctx) as session:
        stmt = _inbox_filter(
            select(func.count(Notification.id)),
            recipient=recipient,
            recipient_kind=recipient_kind,
            unread_only=True,
            include_dismissed=False,
        )
        return int((await session.execute(stmt)).scalar() or 0)


async def list_channel_deliveries(ctx: TenantContext, notification_id: str) -> list[NotificationChannelDelivery]:
    async with tenant_session(ctx) as session:
        await _load_notification(session, notification_id)
        rows = await session.execute(
            select(NotificationChannelDelivery)
            .where(NotificationChannelDelivery.notification_id == notification_id)
            .order_by(NotificationChannelDelivery.channel.asc())
        )
        return list(rows.scalars().all())


async def list_delivery_attempts(ctx: TenantContext, notification_id: str) -> list[NotificationAttempt]:
    async with tenant_session(ctx) as session:
        rows = await session.execute(
            select(NotificationAttempt)
            .where(NotificationAttempt.notification_id == notification_id)
            .order_by(NotificationAttempt.channel.asc(), NotificationAttempt.attempt_no.asc())
        )
        return list(rows.scalars().all())


async def expire_due_notifications(*, now: datetime | None = None, limit: int | None = None) -> int:
    """Mark undelivered channels of expired notifications as expired; returns notifications touched."""
    now = now or utc_now()
    limit = limit or get_settings().notify_sweep_batch_size
    async with system_session("notification_expiry_sweep") as session:
        candidates = (
            await session.execute(
                select(Notification.tenant_id, Notification.id)
                .where(Notification.expires_at <= now, Notification.delivery_state == STATE_PENDING)
                .order_by(Notification.expires_at.asc())
                .limit(limit)
            )
        ).all()
    expired = 0
    # Enumeration is cross-tenant; each transition runs inside its own tenant's context.
    for tenant_id, notification_id in candidates:
        async with tenant_session(system_context(tenant_id)) as session:
            notification = await session.get(Notification, notification_id)
            if notification is None:
                continue
            await _close_open_deliveries(session, notification, DELIVERY_EXPIRED)
            await session.commit()
            expired += 1
    if expired:
        logger.info("notifications_expired count=%s", expired)
    return expired


async def dispatch_due_deliveries(*, now: datetime | None = None, limit: int | None = None) -> int:
    """Hand every due open delivery to the executor; returns the number scheduled."""
    now = now or utc_now()
    limit = limit or get_settings().notify_sweep_batch_size
    async with system_session("notification_dispatch_sweep") as session:
        rows = (
            await session.execute(
                select(NotificationChannelDelivery.tenant_id, NotificationChannelDelivery.id)
                .where(
                    NotificationChannelDelivery.status.in_(OPEN_DELIVERY_STATUSES),
                    NotificationChannelDelivery.next_attempt_at <= now,
                )
                .order_by(NotificationChannelDelivery.next_attempt_at.asc())
                .limit(limit)
            )
        ).all()
    by_tenant: dict[str, list[str]] = {}
    for tenant_id, delivery_id in rows:
        by_tenant.setdefault(str(tenant_id), []).append(str(delivery_id))
    for tenant_id, delivery_ids in by_tenant.items():
        schedule_deliveries(tenant_id, delivery_ids)
    return len(rows)
