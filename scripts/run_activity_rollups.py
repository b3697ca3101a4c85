from __future__ import annotations

import asyncio
import json

from tenantledger.core.logging import configure_logging
from tenantledger.services.analytics import run_rollups


async def _main() -> None:
    configure_logging()
    details = await run_rollups()
    print(json.dumps(details, sort_keys=True))


if __name__ == "__main__":
    asyncio.run(_main())
