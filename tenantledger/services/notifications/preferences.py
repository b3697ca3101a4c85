from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.errors import ValidationError
from tenantledger.domain.models import NotificationPreference, utc_now
from tenantledger.domain.vocab import CHANNELS, NOTIFICATION_CATEGORIES
from tenantledger.persistence.guards import TenantContext, tenant_session


# Categories that reach every enabled channel even when muted.
_UNMUTABLE_CATEGORIES = frozenset({"urgent", "error"})


def filter_channels(
    channels: list[str],
    *,
    category: str,
    preference: NotificationPreference | None,
) -> list[str]:
    """Apply recipient preferences to the requested channels.

    Only requested channels survive. Global opt-out removes every channel; a muted category
    removes every channel unless the category is urgent or error. The result may be empty.
    """
    requested = list(dict.fromkeys(channels))
    if preference is None:
        return requested
    if preference.global_opt_out:
        return []
    if category in (preference.muted_categories or []) and category not in _UNMUTABLE_CATEGORIES:
        return []
    disabled = set(preference.disabled_channels or [])
    return [channel for channel in requested if channel not in disabled]


async def get_preference(session: AsyncSession, recipient: str, recipient_kind: str) -> NotificationPreference | None:
    result = await session.execute(
        select(NotificationPreference).where(
            NotificationPreference.recipient == recipient,
            NotificationPreference.recipient_kind == recipient_kind,
        )
    )
    return result.scalar_one_or_none()


async def set_preference(
    ctx: TenantContext,
    *,
    recipient: str,
    recipient_kind: str = "user",
    disabled_channels: list[str] | None = None,
    muted_categories: list[str] | None = None,
    global_opt_out: bool = False,
) -> NotificationPreference:
    disabled = list(dict.fromkeys(disabled_channels or []))
    muted = list(dict.fromkeys(muted_categories or []))
    unknown_channels = [channel for channel in disabled if channel not in CHANNELS]
    unknown_categories = [category for category in muted if category not in NOTIFICATION_CATEGORIES]
    if unknown_channels or unknown_categories:
        raise ValidationError(
            "Unknown channels or categories in preference",
            details={"channels": unknown_channels, "categories": unknown_categories},
        )
    async with tenant_session(ctx) as session:
        row = await get_preference(session, recipient, recipient_kind)
        if row is None:
            row = NotificationPreference(
                id=uuid4().hex,
                tenant_id=ctx.tenant_id,
                recipient=recipient,
                recipient_kind=recipient_kind,
            )
            session.add(row)
        row.disabled_channels = disabled
        row.muted_categories = muted
        row.global_opt_out = global_opt_out
        row.updated_at = utc_now()
        await session.commit()
        return row
