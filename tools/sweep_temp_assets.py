from __future__ import annotations

import argparse
import sys
import time

from veilpix_service.asset_store import TemporaryAssetStore
from veilpix_service.datastore import DatastoreHandle, now_iso
from veilpix_service.errors import ConfigurationError, DatastoreError
from veilpix_service.settings import load_settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete temporary provider assets older than the configured horizon."
    )
    parser.add_argument("--env-file", default=".env.local", help="Extra dotenv file loaded before .env.")
    parser.add_argument(
        "--horizon-seconds",
        type=int,
        default=None,
        help="Override TEMP_ASSET_HORIZON_SECONDS for this run.",
    )
    parser.add_argument(
        "--prune-sessions-days",
        type=int,
        default=None,
        help="Also delete anonymous sessions idle for more than this many days.",
    )
    parser.add_argument("--dry-run", action="store_true", help="List what would be deleted without deleting.")
    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    if args.horizon_seconds is not None and args.horizon_seconds < 0:
        raise ValueError("--horizon-seconds must be >= 0")
    if args.prune_sessions_days is not None and args.prune_sessions_days < 0:
        raise ValueError("--prune-sessions-days must be >= 0")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        validate_args(args)
    except ValueError as exc:
        print(f"Argument error: {exc}", file=sys.stderr)
        return 2

    try:
        settings = load_settings(args.env_file)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    horizon = args.horizon_seconds if args.horizon_seconds is not None else settings.temp_asset_horizon_seconds
    try:
        datastore = DatastoreHandle(settings.database_path, starting_credits=settings.starting_credits)
    except DatastoreError as exc:
        print(f"Datastore error: {exc}", file=sys.stderr)
        return 1

    store = TemporaryAssetStore(settings.temp_asset_dir, settings.public_base_url, datastore=datastore)
    print("Sweep plan")
    print(f"  Asset dir: {settings.temp_asset_dir}")
    print(f"  Horizon: {horizon}s (older than {now_iso(time.time() - horizon)})")

    keys = store.sweep_expired(horizon, dry_run=args.dry_run)
    for key in keys:
        print(f"  {'would delete' if args.dry_run else 'deleted'}: {key}")

    pruned = 0
    if args.prune_sessions_days is not None:
        cutoff_ts = time.time() - args.prune_sessions_days * 86_400
        if args.dry_run:
            print(f"  Would prune anonymous sessions idle since {now_iso(cutoff_ts)}")
        else:
            try:
                pruned = datastore.delete_anonymous_sessions_older_than(cutoff_ts)
            except DatastoreError as exc:
                print(f"Session prune failed: {exc}", file=sys.stderr)
                return 1

    print(f"Summary: assets={len(keys)} sessions_pruned={pruned} dry_run={args.dry_run}")
    datastore.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
