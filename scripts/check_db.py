#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from budget_offline.config import load_config
from budget_offline.db import parse_database_config
from budget_offline.migrations import apply_migrations, get_db_health


def main():
    parser = argparse.ArgumentParser(description="Check and print offline cache schema health")
    parser.add_argument("db_path", nargs="?", default=None, help="Path to SQLite DB (defaults to BUDGET_OFFLINE_DB or the configured local store)")
    parser.add_argument("--server", action="store_true", help="Check the reference API schema instead of the local cache")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args()

    schema = "server" if args.server else "local"
    config = parse_database_config(args.db_path or load_config()["LOCAL_DATABASE"])
    if args.migrate:
        apply_migrations(config, schema=schema)

    print(json.dumps(get_db_health(config, schema=schema), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
