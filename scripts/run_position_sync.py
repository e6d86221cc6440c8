from __future__ import annotations

import argparse
import asyncio
import sys

from tenantsync.core.errors import ProviderConfigError
from tenantsync.core.logging import configure_logging
from tenantsync.persistence.guards import TenantPredicateError
from tenantsync.services.jobs import PositionSyncJobRequest, run_position_sync


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Refresh current on-hand positions for one tenant.")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    return parser


async def _run(args: argparse.Namespace) -> int:
    result = await run_position_sync(PositionSyncJobRequest(tenant_id=args.tenant))
    print(
        f"status={result.status} rows_read={result.rows_read} updated={result.updated} "
        f"unchanged={result.unchanged} skipped={result.skipped} errors={result.errors}"
    )
    for reason, count in sorted(result.skipped_by_reason.items()):
        print(f"  skipped_{reason}={count}")
    if result.error:
        print(f"  error={result.error}")
    return 0 if result.status == "completed" else 4


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except ProviderConfigError as exc:
        print(f"WAREHOUSE_CONFIG_MISSING: {exc}", file=sys.stderr)
        return 2
    except TenantPredicateError as exc:
        print(f"TENANT_INVALID: {exc.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
