from __future__ import annotations

import argparse
import asyncio
from datetime import date
import sys

from tenantsync.core.errors import AuthError, ProviderConfigError, WarehouseError
from tenantsync.core.logging import configure_logging
from tenantsync.domain.records import MODEL_TYPES
from tenantsync.persistence.guards import TenantPredicateError
from tenantsync.services.jobs import BackfillJobRequest, run_backfill


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a resumable warehouse backfill for one tenant.")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--source", required=True, help="Source system, e.g. kiotviet")
    parser.add_argument(
        "--model",
        action="append",
        choices=MODEL_TYPES,
        help="Model type to load; repeat for several (default: all)",
    )
    parser.add_argument("--max-batches", type=int, default=None, help="Stop after N batches")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per batch")
    parser.add_argument("--force-restart", action="store_true", help="Rewind the checkpoint")
    parser.add_argument("--date-from", type=date.fromisoformat, default=None, help="Earliest date, YYYY-MM-DD")
    parser.add_argument("--date-to", type=date.fromisoformat, default=None, help="Latest date, YYYY-MM-DD")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map setup failures to stable exit codes; run failures are reported per model.
    if isinstance(exc, ProviderConfigError):
        return 2, f"WAREHOUSE_CONFIG_MISSING: {exc}"
    if isinstance(exc, TenantPredicateError):
        return 2, f"TENANT_INVALID: {exc.message}"
    if isinstance(exc, AuthError):
        return 3, f"WAREHOUSE_AUTH_FAILED: {exc}"
    if isinstance(exc, WarehouseError):
        return 4, f"WAREHOUSE_ERROR: {exc}"
    return 1, f"UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    request = BackfillJobRequest(
        tenant_id=args.tenant,
        source=args.source,
        model_types=args.model or list(MODEL_TYPES),
        max_batches=args.max_batches,
        batch_size=args.batch_size,
        force_restart=args.force_restart,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    results = await run_backfill(request)
    exit_code = 0
    for result in results:
        print(
            f"model={result.model_type} status={result.status} batches={result.batches_processed} "
            f"rows_read={result.rows_read} rows_written={result.rows_written} "
            f"rows_skipped={result.rows_skipped} next_cursor={result.next_cursor or ''}"
        )
        for reason, count in sorted(result.skipped_by_reason.items()):
            print(f"  skipped_{reason}={count}")
        if result.error:
            print(f"  error={result.error}")
        if result.status == "failed":
            exit_code = 4
    return exit_code


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - CLI reports a single line
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
