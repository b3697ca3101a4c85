from tenantledger.services.notifications.channels import (
    ChannelMessage,
    register_channel_sender,
    reset_channel_senders,
)
from tenantledger.services.notifications.dispatcher import (
    DeliveryOutcome,
    NotificationDraft,
    NotificationPage,
    attempt_channel_delivery,
    create_notification,
    dispatch_due_deliveries,
    drive_channel_delivery,
    expire_due_notifications,
    get_notification,
    list_channel_deliveries,
    list_delivery_attempts,
    list_notifications,
    mark_dismissed,
    mark_read,
    unread_count,
)
from tenantledger.services.notifications.preferences import set_preference
from tenantledger.services.notifications.rules import (
    create_from_template,
    create_rule,
    evaluate_event_triggers,
    list_rules,
    set_rule_active,
    upsert_template,
)

__all__ = [
    "ChannelMessage",
    "register_channel_sender",
    "reset_channel_senders",
    "DeliveryOutcome",
    "NotificationDraft",
    "NotificationPage",
    "attempt_channel_delivery",
    "create_notification",
    "dispatch_due_deliveries",
    "drive_channel_delivery",
    "expire_due_notifications",
    "get_notification",
    "list_channel_deliveries",
    "list_delivery_attempts",
    "list_notifications",
    "mark_dismissed",
    "mark_read",
    "unread_count",
    "set_preference",
    "create_from_template",
    "create_rule",
    "evaluate_event_triggers",
    "list_rules",
    "set_rule_active",
    "upsert_template",
]
