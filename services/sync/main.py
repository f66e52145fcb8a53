#!/usr/bin/env python3
"""
Marketplace Sync - command-line trigger.

Runs one sync invocation against the MongoDB store: discovers orders in the
window, reconciles them, then reconciles fees for eligible orders.

Usage:
    # Every active store, last 24 hours
    python -m services.sync.main --all

    # One Shopee store, last week, smaller batches
    python -m services.sync.main --store 123456 --marketplace shopee --last week --batch-size 20

    # Renew every token that is near expiry
    python -m services.sync.main --refresh-tokens
"""
import argparse
import signal
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for direct script runs
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.database import MongoRecordStore, close_db
from core.errors import SyncAborted, SyncError
from core.logging import get_logger
from core.models import WINDOW_PRESETS, Marketplace, SyncRequest, SyncSummary, SyncWindow
from services.sync.engine import SyncEngine, SyncSettings
from services.sync.marketplaces import build_clients

logger = get_logger("sync-cli")


def format_summary(summary: SyncSummary) -> str:
    """Human-readable report of one invocation."""
    lines = [
        "=" * 60,
        "MARKETPLACE SYNC SUMMARY",
        "=" * 60,
        f"Correlation ID:     {summary.correlation_id}",
        f"Stores:             {summary.succeeded_stores}/{len(summary.per_store)} succeeded",
        f"Inserted:           {summary.inserted}",
        f"Updated:            {summary.updated}",
        f"Unchanged:          {summary.unchanged}",
        f"Failed:             {summary.failed}",
    ]
    if summary.cancelled:
        lines.append("Cancelled:          yes")

    for store in summary.per_store:
        name = store.store_name or store.store_id
        state = "ok" if store.success else f"FAILED ({store.failure_kind or 'error'})"
        lines.append("-" * 60)
        lines.append(f"[{store.marketplace}] {name}: {state}")
        lines.append(
            f"  orders:     {store.discovered} discovered, {store.inserted} inserted, "
            f"{store.updated} updated, {store.unchanged} unchanged, {store.failed} failed"
        )
        fin = store.financials
        if fin.total or fin.failed:
            lines.append(
                f"  financials: {fin.inserted} inserted, {fin.updated} updated, "
                f"{fin.unchanged} unchanged, {fin.failed} failed"
            )
        for error in store.errors[:5]:
            lines.append(f"  ! {error}")
        if len(store.errors) > 5:
            lines.append(f"  ! ... {len(store.errors) - 5} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Marketplace Sync - reconcile orders and fees from Shopee and Mercado Livre",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Every active store, last 24 hours
    python -m services.sync.main --all

    # One store, explicit epoch range, orders only
    python -m services.sync.main --store 99887766 --from 1704067200 --to 1704153600 --skip-financial

    # Force renewal of every Mercado Livre token
    python -m services.sync.main --refresh-tokens --force --marketplace mercado_livre
        """
    )

    target = parser.add_mutually_exclusive_group()
    target.add_argument("--store", help="Store id to sync")
    target.add_argument("--all", action="store_true", help="Sync every active store")
    target.add_argument(
        "--refresh-tokens",
        action="store_true",
        help="Renew tokens that are near expiry instead of syncing"
    )

    parser.add_argument(
        "--marketplace",
        choices=[m.value for m in Marketplace],
        help="Restrict to one marketplace"
    )
    parser.add_argument(
        "--last",
        choices=list(WINDOW_PRESETS),
        help="Window preset (default: SYNC_WINDOW_HOURS)"
    )
    parser.add_argument("--from", dest="time_from", type=int, help="Window start (epoch seconds)")
    parser.add_argument("--to", dest="time_to", type=int, help="Window end (epoch seconds)")
    parser.add_argument("--batch-size", type=int, help="Override per-endpoint batch size")
    parser.add_argument("--max-concurrent-stores", type=int, help="Stores processed at once")
    parser.add_argument("--skip-financial", action="store_true", help="Only reconcile orders")
    parser.add_argument("--force", action="store_true", help="With --refresh-tokens: renew every token")
    return parser


def resolve_window(args, settings: SyncSettings) -> SyncWindow:
    if args.time_from is not None or args.time_to is not None:
        if args.time_from is None or args.time_to is None:
            raise ValueError("--from and --to must be given together")
        return SyncWindow.from_epochs(args.time_from, args.time_to)
    if args.last:
        return SyncWindow.preset(args.last)
    return settings.default_window()


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not (args.store or args.all or args.refresh_tokens):
        parser.error("one of --store, --all or --refresh-tokens is required")

    settings = SyncSettings.from_config()
    try:
        window = resolve_window(args, settings)
    except ValueError as e:
        parser.error(str(e))

    try:
        engine = SyncEngine(
            MongoRecordStore(),
            build_clients(retry=settings.retry_policy()),
            settings=settings,
        )

        if args.refresh_tokens:
            results = engine.tokens.refresh_all(force=args.force, marketplace=args.marketplace)
            for entry in results:
                state = "renewed" if entry["renewed"] else ("FAILED: " + entry["error"] if entry["error"] else "valid")
                print(f"[{entry['marketplace']}] {entry['store_id']}: {state}")
            return 1 if any(entry["error"] for entry in results) else 0

        # Ctrl+C stops at the next page/batch boundary; finished batches stay committed
        signal.signal(signal.SIGINT, lambda signum, frame: engine.cancel())

        request = SyncRequest(
            store_id=args.store,
            marketplace=args.marketplace,
            window=window,
            batch_size=args.batch_size,
            max_concurrent_stores=args.max_concurrent_stores,
            skip_financial=args.skip_financial,
        )
        summary = engine.run(request)
        print(format_summary(summary))
        return 0 if summary.succeeded_stores else 1

    except SyncAborted as e:
        if e.summary is not None:
            print(format_summary(e.summary))
        print(f"\n❌ {e.message}")
        return 1

    except SyncError as e:
        logger.critical(f"Sync failed: {e.message}", exc_info=True)
        print(f"\n❌ Sync failed: {e.message}")
        print("   Check logs: logs/sync-engine.log")
        return 1

    finally:
        close_db()


if __name__ == "__main__":
    sys.exit(main())
