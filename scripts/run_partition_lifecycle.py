from __future__ import annotations

import asyncio
import json

from tenantledger.core.logging import configure_logging
from tenantledger.services.lifecycle import run_lifecycle


async def _main() -> None:
    # Ad-hoc lifecycle pass for operators; the scheduler worker runs the same pass on cron.
    configure_logging()
    report = await run_lifecycle()
    print(json.dumps(report.as_dict(), sort_keys=True))


if __name__ == "__main__":
    asyncio.run(_main())
