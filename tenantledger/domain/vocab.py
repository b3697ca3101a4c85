from __future__ import annotations

import re
from typing import Literal


# Namespaced lowercase identifiers such as "invoice.created" or "work_order.status_changed".
EVENT_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")
# Entity discriminants follow the same casing without requiring a namespace.
ENTITY_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

EventCategory = Literal["user_action", "system_event", "integration", "security", "performance"]
EVENT_CATEGORIES: tuple[str, ...] = ("user_action", "system_event", "integration", "security", "performance")

Severity = Literal["debug", "info", "warning", "error", "critical"]
# Ordered from least to most severe; the index doubles as the rank.
SEVERITIES: tuple[str, ...] = ("debug", "info", "warning", "error", "critical")

ActorType = Literal["user", "system", "session"]
ACTOR_TYPES: tuple[str, ...] = ("user", "system", "session")

PARTITION_PLANNED = "planned"
PARTITION_ACTIVE = "active"
PARTITION_ARCHIVED = "archived"
PARTITION_DROPPED = "dropped"
PARTITION_STATES: tuple[str, ...] = (PARTITION_PLANNED, PARTITION_ACTIVE, PARTITION_ARCHIVED, PARTITION_DROPPED)
WRITABLE_PARTITION_STATES = frozenset({PARTITION_PLANNED, PARTITION_ACTIVE})
PARTITION_KIND_MONTHLY = "monthly"
PARTITION_KIND_EXCEPTIONS = "exceptions"
EXCEPTIONS_PARTITION_KEY = "exceptions"

RecipientKind = Literal["user", "role", "department", "business", "external"]
RECIPIENT_KINDS: tuple[str, ...] = ("user", "role", "department", "business", "external")

NotificationCategory = Literal["info", "success", "warning", "error", "urgent", "marketing"]
NOTIFICATION_CATEGORIES: tuple[str, ...] = ("info", "success", "warning", "error", "urgent", "marketing")

CHANNEL_WEB = "web"
CHANNELS: tuple[str, ...] = (CHANNEL_WEB, "email", "sms", "push", "webhook")

DELIVERY_PENDING = "pending"
DELIVERY_RETRYING = "retrying"
DELIVERY_DELIVERED = "delivered"
DELIVERY_FAILED = "failed"
DELIVERY_EXPIRED = "expired"
DELIVERY_CANCELLED = "cancelled"
# Deliveries in these states may still be attempted.
OPEN_DELIVERY_STATUSES: tuple[str, ...] = (DELIVERY_PENDING, DELIVERY_RETRYING)
TERMINAL_DELIVERY_STATUSES = frozenset({DELIVERY_DELIVERED, DELIVERY_FAILED, DELIVERY_EXPIRED, DELIVERY_CANCELLED})

STATE_PENDING = "pending"
STATE_DELIVERED = "delivered"
STATE_PARTIAL = "partial"
STATE_ALL_FAILED = "all_failed"
STATE_EXPIRED = "expired"
STATE_CANCELLED = "cancelled"


def severity_rank(severity: str) -> int:
    return SEVERITIES.index(severity)
