from __future__ import annotations

from datetime import timedelta
import logging
import re
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.errors import LedgerError, NotFoundError, ValidationError
from tenantledger.domain.models import ActivityEvent, Notification, NotificationRule, NotificationTemplate, utc_now
from tenantledger.domain.vocab import CHANNEL_WEB, CHANNELS, NOTIFICATION_CATEGORIES, RECIPIENT_KINDS
from tenantledger.persistence.guards import TenantContext, system_context, tenant_session
from tenantledger.persistence.repos import events as events_repo
from tenantledger.services.notifications.dispatcher import create_notification


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")
_OPERATORS = {"eq", "ne", "gt", "gte", "lt", "lte", "in", "contains", "exists"}
# Event attributes a rule condition may reference directly; anything else goes through payload.
_EVENT_FIELDS = (
    "type",
    "category",
    "severity",
    "actor_type",
    "actor_id",
    "entity_type",
    "entity_id",
    "parent_entity_type",
    "parent_entity_id",
    "description",
    "duration_ms",
)
_MISSING = object()


def lookup_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def render_template(text: str, variables: dict[str, Any]) -> str:
    # Unknown placeholders render empty; required ones are checked before rendering.
    def _replace(match: re.Match[str]) -> str:
        value = lookup_path(variables, match.group(1))
        if value is _MISSING or value is None:
            return ""
        return str(value)

    return _PLACEHOLDER.sub(_replace, text)


def missing_variables(required: list[str], variables: dict[str, Any]) -> list[str]:
    return [name for name in required if lookup_path(variables, name) in (_MISSING, None)]


def event_variables(event: ActivityEvent) -> dict[str, Any]:
    attrs = {name: getattr(event, "event_type" if name == "type" else name) for name in _EVENT_FIELDS}
    attrs["id"] = event.id
    attrs["occurred_at"] = event.occurred_at.isoformat() if event.occurred_at else None
    payload = dict(event.payload or {})
    # Payload keys are also exposed at the top level for short placeholders.
    return {**payload, "event": attrs, "payload": payload}


def _field_value(event: ActivityEvent, field: str) -> Any:
    if field.startswith("payload."):
        return lookup_path(event.payload or {}, field[len("payload."):])
    if field in _EVENT_FIELDS:
        return getattr(event, "event_type" if field == "type" else field)
    return _MISSING


def evaluate_condition(condition: dict[str, Any], event: ActivityEvent) -> bool:
    op = condition.get("op", "eq")
    actual = _field_value(event, str(condition.get("field", "")))
    expected = condition.get("value")
    if op == "exists":
        present = actual is not _MISSING and actual is not None
        return present if expected is None else present == bool(expected)
    if actual is _MISSING:
        return False
    try:
        if op == "eq":
            return actual == expected
        if op == "ne":
            return actual != expected
        if op == "gt":
            return actual is not None and actual > expected
        if op == "gte":
            return actual is not None and actual >= expected
        if op == "lt":
            return actual is not None and actual < expected
        if op == "lte":
            return actual is not None and actual <= expected
        if op == "in":
            return isinstance(expected, list) and actual in expected
        if op == "contains":
            if isinstance(actual, (list, str)):
                return expected in actual
            return False
    except TypeError:
        # Mismatched types never match.
        return False
    return False


def matches_event_type(pattern: str, event_type: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type


def rule_matches(rule: NotificationRule, event: ActivityEvent) -> bool:
    if not rule.is_active or not matches_event_type(rule.event_type_pattern, event.event_type):
        return False
    return all(evaluate_condition(condition, event) for condition in (rule.conditions or []))


def resolve_recipient(rule: NotificationRule, event: ActivityEvent) -> str | None:
    if rule.recipient:
        return rule.recipient
    source = rule.recipient_from or ""
    if source == "actor":
        return event.actor_id
    if source.startswith("payload."):
        value = lookup_path(event.payload or {}, source[len("payload."):])
        if value is _MISSING or value is None:
            return None
        return str(value)
    return None


def _validate_channels(channels: list[str] | None) -> list[str] | None:
    if channels is None:
        return None
    unknown = [channel for channel in channels if channel not in CHANNELS]
    if unknown or not channels:
        raise ValidationError("Channels must be a non-empty subset of the known channels", details={"unknown": unknown})
    return list(dict.fromkeys(channels))


async def get_template(session: AsyncSession, key: str) -> NotificationTemplate | None:
    result = await session.execute(select(NotificationTemplate).where(NotificationTemplate.key == key))
    return result.scalar_one_or_none()


async def upsert_template(
    ctx: TenantContext,
    *,
    key: str,
    title: str,
    message: str,
    required_variables: list[str] | None = None,
    notification_type: str | None = None,
    category: str = "info",
    priority: int = 5,
    channels: list[str] | None = None,
) -> NotificationTemplate:
    if category not in NOTIFICATION_CATEGORIES:
        raise ValidationError(f"category must be one of {', '.join(NOTIFICATION_CATEGORIES)}")
    if not 1 <= int(priority) <= 9:
        raise ValidationError("priority must be between 1 and 9")
    channels = _validate_channels(channels or [CHANNEL_WEB])
    async with tenant_session(ctx) as session:
        row = await get_template(session, key)
        if row is None:
            row = NotificationTemplate(id=uuid4().hex, tenant_id=ctx.tenant_id, key=key)
            session.add(row)
        row.title = title
        row.message = message
        row.required_variables = list(required_variables or [])
        row.notification_type = notification_type
        row.category = category
        row.priority = int(priority)
        row.channels = channels
        row.updated_at = utc_now()
        await session.commit()
        return row


async def create_from_template(
    ctx: TenantContext,
    template_key: str,
    variables: dict[str, Any],
    *,
    recipient: str,
    recipient_kind: str = "user",
    channels: list[str] | None = None,
    source_event_id: str | None = None,
    rule_id: str | None = None,
    overrides: dict[str, Any] | None = None,
    dispatch: bool = True,
) -> Notification:
    """Render a stored template and create the notification.

    Fails with a validation error when a required variable is absent.
    """
    async with tenant_session(ctx) as session:
        template = await get_template(session, template_key)
    if template is None:
        raise NotFoundError("Notification template not found", details={"template_key": template_key})
    missing = missing_variables(list(template.required_variables or []), variables)
    if missing:
        raise ValidationError(
            "Template variables missing",
            details={"template_key": template_key, "missing": missing},
        )
    draft: dict[str, Any] = {
        "recipient": recipient,
        "recipient_kind": recipient_kind,
        "type": template.notification_type or template.key,
        "category": template.category,
        "priority": template.priority,
        "title": render_template(template.title, variables),
        "message": render_template(template.message, variables),
        "channels": channels or list(template.channels or [CHANNEL_WEB]),
    }
    draft.update(overrides or {})
    return await create_notification(ctx, draft, source_event_id=source_event_id, rule_id=rule_id, dispatch=dispatch)


async def create_rule(
    ctx: TenantContext,
    *,
    name: str,
    event_type_pattern: str,
    template_key: str,
    conditions: list[dict[str, Any]] | None = None,
    recipient: str | None = None,
    recipient_kind: str = "user",
    recipient_from: str | None = None,
    channels: list[str] | None = None,
    cooldown_seconds: int = 0,
) -> NotificationRule:
    if recipient is None and not recipient_from:
        raise ValidationError("A rule needs a fixed recipient or recipient_from")
    if recipient_from and recipient_from != "actor" and not recipient_from.startswith("payload."):
        raise ValidationError("recipient_from must be 'actor' or 'payload.<path>'")
    if recipient_kind not in RECIPIENT_KINDS:
        raise ValidationError(f"recipient_kind must be one of {', '.join(RECIPIENT_KINDS)}")
    for condition in conditions or []:
        if condition.get("op", "eq") not in _OPERATORS or not condition.get("field"):
            raise ValidationError("Invalid rule condition", details={"condition": condition})
    async with tenant_session(ctx) as session:
        rule = NotificationRule(
            id=uuid4().hex,
            tenant_id=ctx.tenant_id,
            name=name,
            event_type_pattern=event_type_pattern,
            conditions=list(conditions or []),
            template_key=template_key,
            recipient=recipient,
            recipient_kind=recipient_kind,
            recipient_from=recipient_from,
            channels=_validate_channels(channels),
            cooldown_seconds=max(0, int(cooldown_seconds)),
            is_active=True,
            created_at=utc_now(),
        )
        session.add(rule)
        await session.commit()
        return rule


async def set_rule_active(ctx: TenantContext, rule_id: str, is_active: bool) -> NotificationRule:
    async with tenant_session(ctx) as session:
        rule = (
            await session.execute(select(NotificationRule).where(NotificationRule.id == rule_id))
        ).scalar_one_or_none()
        if rule is None:
            raise NotFoundError("Notification rule not found", details={"rule_id": rule_id})
        rule.is_active = is_active
        await session.commit()
        return rule


async def list_rules(ctx: TenantContext, *, active_only: bool = False) -> list[NotificationRule]:
    async with tenant_session(ctx) as session:
        stmt = select(NotificationRule).order_by(NotificationRule.created_at.asc())
        if active_only:
            stmt = stmt.where(NotificationRule.is_active.is_(True))
        return list((await session.execute(stmt)).scalars().all())


async def _in_cooldown(session: AsyncSession, rule: NotificationRule, recipient: str) -> bool:
    if rule.cooldown_seconds <= 0:
        return False
    since = utc_now() - timedelta(seconds=rule.cooldown_seconds)
    result = await session.execute(
        select(Notification.id)
        .where(
            Notification.rule_id == rule.id,
            Notification.recipient == recipient,
            Notification.created_at >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def evaluate_event_triggers(tenant_id: str, event_id: str, *, request_id: str | None = None) -> list[str]:
    """Create notifications for every active rule matching a recorded event.

    Runs after the event commit; failures are logged and never reach the event writer.
    """
    ctx = system_context(tenant_id, request_id=request_id)
    created: list[str] = []
    try:
        async with tenant_session(ctx) as session:
            event = await events_repo.get_event(session, event_id)
            if event is None:
                return created
            rules = (
                await session.execute(select(NotificationRule).where(NotificationRule.is_active.is_(True)))
            ).scalars().all()
            targets: list[tuple[NotificationRule, str]] = []
            for rule in rules:
                if not rule_matches(rule, event):
                    continue
                recipient = resolve_recipient(rule, event)
                if recipient is None:
                    logger.info("notification_rule_skipped rule_id=%s event_id=%s reason=no_recipient", rule.id, event_id)
                    continue
                if await _in_cooldown(session, rule, recipient):
                    continue
                targets.append((rule, recipient))
    except (LedgerError, SQLAlchemyError) as exc:
        logger.warning("notification_trigger_evaluation_failed tenant_id=%s event_id=%s", tenant_id, event_id, exc_info=exc)
        return created

    variables = event_variables(event)
    for rule, recipient in targets:
        try:
            notification = await create_from_template(
                ctx,
                rule.template_key,
                variables,
                recipient=recipient,
                recipient_kind=rule.recipient_kind,
                channels=rule.channels,
                source_event_id=event.id,
                rule_id=rule.id,
            )
        except (LedgerError, SQLAlchemyError) as exc:
            logger.warning(
                "notification_rule_failed tenant_id=%s rule_id=%s event_id=%s",
                tenant_id,
                rule.id,
                event_id,
                exc_info=exc,
            )
            continue
        created.append(notification.id)
    return created
