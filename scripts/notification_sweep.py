from __future__ import annotations

import asyncio

from tenantledger.core.logging import configure_logging
from tenantledger.services.background import drain
from tenantledger.services.notifications import dispatch_due_deliveries, expire_due_notifications


async def sweep() -> None:
    configure_logging()
    expired = await expire_due_notifications()
    scheduled = await dispatch_due_deliveries()
    # Inline deliveries run as background tasks; finish them before the loop closes.
    await drain()
    print(f"expired_notifications={expired} scheduled_deliveries={scheduled}")


if __name__ == "__main__":
    asyncio.run(sweep())
