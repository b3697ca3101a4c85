from __future__ import annotations

import argparse
import asyncio

from tenantledger.core.logging import configure_logging
from tenantledger.services.tenants import deactivate_tenant, register_tenant


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register or deactivate a ledger tenant.")
    parser.add_argument("tenant_id")
    parser.add_argument("--name", default=None)
    parser.add_argument("--deactivate", action="store_true")
    return parser.parse_args()


async def _main() -> None:
    args = _parse_args()
    configure_logging()
    if args.deactivate:
        tenant = await deactivate_tenant(args.tenant_id)
        print(f"tenant_deactivated={tenant is not None} tenant_id={args.tenant_id}")
        return
    tenant = await register_tenant(args.tenant_id, name=args.name)
    print(f"tenant_id={tenant.id} active={tenant.is_active}")


if __name__ == "__main__":
    asyncio.run(_main())
