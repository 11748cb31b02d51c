#!/usr/bin/env python3
import argparse
import asyncio
import getpass
import json
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from budget_offline import OfflineStore


async def sync_once(args):
    overrides = {"POLL_INTERVAL": 0}
    if args.api_url:
        overrides["API_BASE_URL"] = args.api_url
    if args.db_path:
        overrides["LOCAL_DATABASE"] = args.db_path

    store = OfflineStore(overrides)
    # Log in before init so the automatic startup sync is authenticated.
    if args.username:
        password = args.password or getpass.getpass()
        if not await store.api.login(args.username, password):
            print("Login failed", file=sys.stderr)
            await store.dispose()
            return 1

    async with store:
        await store.monitor.drain()
        await store.sync_pending_changes()
        status = {
            "online": store.is_online,
            "pending_changes": store.pending_changes,
            "last_sync_time": store.last_sync_time,
            "sync_error": store.sync_error,
            "failed": [failed.reason for failed in store.failed_items],
        }
    print(json.dumps(status, indent=2, sort_keys=True))
    return 0 if status["pending_changes"] == 0 and not status["failed"] else 2


def main():
    parser = argparse.ArgumentParser(description="Replay queued offline changes against the budget API once")
    parser.add_argument("--api-url", help="Base URL of the budget API (defaults to BUDGET_API_URL)")
    parser.add_argument("--db-path", help="Local cache database (defaults to BUDGET_OFFLINE_DB)")
    parser.add_argument("--username", help="Log in before syncing")
    parser.add_argument("--password", help="Password for --username (prompted when omitted)")
    parser.add_argument("--verbose", action="store_true", help="Log sync progress")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    sys.exit(asyncio.run(sync_once(args)))


if __name__ == "__main__":
    main()
