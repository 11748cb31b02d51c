import argparse
import json
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_LOCAL_TABLES = {
    "accounts": {
        "columns": {"id", "user_id", "is_active", "data"},
        "indexes": {"idx_accounts_user_id", "idx_accounts_is_active"},
    },
    "categories": {
        "columns": {"id", "type", "group_id", "data"},
        "indexes": {"idx_categories_type", "idx_categories_group_id"},
    },
    "transactions": {
        "columns": {"id", "account_id", "category_id", "date", "description", "data"},
        "indexes": {
            "idx_transactions_account_id",
            "idx_transactions_category_id",
            "idx_transactions_date",
            "idx_transactions_description",
        },
    },
    "payees": {
        "columns": {"id", "name", "data"},
        "indexes": {"idx_payees_name"},
    },
    "category_groups": {
        "columns": {"id", "sort_order", "data"},
        "indexes": {"idx_category_groups_sort_order"},
    },
    "sync_queue": {
        "columns": {"id", "timestamp", "data"},
        "indexes": {"idx_sync_queue_timestamp"},
    },
    "metadata": {
        "columns": {"key", "data"},
        "indexes": set(),
    },
    "api_cache": {
        "columns": {"url", "timestamp", "data"},
        "indexes": {"idx_api_cache_timestamp"},
    },
}

REQUIRED_SERVER_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "accounts": {
        "columns": {
            "id",
            "user_id",
            "name",
            "type",
            "balance",
            "currency",
            "color",
            "icon",
            "is_active",
            "sort_order",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_accounts_user_id"},
    },
    "category_groups": {
        "columns": {"id", "user_id", "name", "sort_order", "created_at"},
        "indexes": set(),
    },
    "categories": {
        "columns": {"id", "user_id", "name", "type", "color", "icon", "group_id", "is_active", "is_hidden", "created_at"},
        "indexes": {"idx_categories_user_id"},
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "account_id",
            "category_id",
            "amount",
            "description",
            "date",
            "payee",
            "memo",
            "flag",
            "cleared",
            "notes",
            "tags",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_transactions_user_date", "idx_transactions_account_id"},
    },
    "payees": {
        "columns": {"id", "user_id", "name", "use_count"},
        "indexes": {"uq_payees_user_name"},
    },
}


def table_exists(conn, name):
    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def index_exists(conn, index_name):
    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def get_table_columns(conn, table):
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def local_migration_001(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY,
            user_id INTEGER,
            is_active INTEGER,
            data TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY,
            type TEXT,
            group_id INTEGER,
            data TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY,
            account_id INTEGER,
            category_id INTEGER,
            date TEXT,
            description TEXT,
            data TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payees (
            id INTEGER PRIMARY KEY,
            name TEXT,
            data TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS category_groups (
            id INTEGER PRIMARY KEY,
            sort_order INTEGER,
            data TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_queue (
            id TEXT PRIMARY KEY,
            timestamp REAL NOT NULL,
            data TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            data TEXT NOT NULL
        )
        """
    )

    for index_name, table, column in [
        ("idx_accounts_user_id", "accounts", "user_id"),
        ("idx_accounts_is_active", "accounts", "is_active"),
        ("idx_categories_type", "categories", "type"),
        ("idx_categories_group_id", "categories", "group_id"),
        ("idx_transactions_account_id", "transactions", "account_id"),
        ("idx_transactions_category_id", "transactions", "category_id"),
        ("idx_transactions_date", "transactions", "date"),
        ("idx_transactions_description", "transactions", "description"),
        ("idx_payees_name", "payees", "name"),
        ("idx_category_groups_sort_order", "category_groups", "sort_order"),
        ("idx_sync_queue_timestamp", "sync_queue", "timestamp"),
    ]:
        create_index_if_missing(conn, index_name, f"CREATE INDEX IF NOT EXISTS {index_name} ON {table}({column})")


def local_migration_002(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_cache (
            url TEXT PRIMARY KEY,
            timestamp REAL,
            data TEXT NOT NULL
        )
        """
    )
    create_index_if_missing(
        conn,
        "idx_api_cache_timestamp",
        "CREATE INDEX IF NOT EXISTS idx_api_cache_timestamp ON api_cache(timestamp)",
    )


def server_migration_001(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'checking',
            balance REAL NOT NULL DEFAULT 0,
            currency TEXT NOT NULL DEFAULT 'USD',
            color TEXT NOT NULL DEFAULT '#3B82F6',
            icon TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS category_groups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'expense',
            color TEXT NOT NULL DEFAULT '#6B7280',
            icon TEXT,
            group_id INTEGER,
            is_active INTEGER NOT NULL DEFAULT 1,
            is_hidden INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (group_id) REFERENCES category_groups (id) ON DELETE SET NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            category_id INTEGER,
            amount REAL NOT NULL,
            description TEXT NOT NULL,
            date TEXT NOT NULL,
            payee TEXT,
            memo TEXT,
            flag TEXT,
            cleared TEXT NOT NULL DEFAULT 'uncleared',
            notes TEXT,
            tags TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (account_id) REFERENCES accounts (id),
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE SET NULL
        )
        """
    )
    create_index_if_missing(
        conn,
        "idx_accounts_user_id",
        "CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_categories_user_id",
        "CREATE INDEX IF NOT EXISTS idx_categories_user_id ON categories(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_date",
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_account_id",
        "CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id)",
    )


def server_migration_002(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payees (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            use_count INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """
    )
    create_index_if_missing(
        conn,
        "uq_payees_user_name",
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_payees_user_name ON payees(user_id, name)",
    )
    # Backfill from transactions recorded before payees were tracked.
    conn.execute(
        """
        INSERT OR IGNORE INTO payees (user_id, name, use_count)
        SELECT user_id, COALESCE(NULLIF(TRIM(payee), ''), description) AS name, COUNT(*)
        FROM transactions
        WHERE COALESCE(NULLIF(TRIM(payee), ''), description) IS NOT NULL
        GROUP BY user_id, name
        """
    )


SCHEMAS = {
    "local": {
        "migrations": [
            (1, local_migration_001),
            (2, local_migration_002),
        ],
        "required_tables": REQUIRED_LOCAL_TABLES,
    },
    "server": {
        "migrations": [
            (1, server_migration_001),
            (2, server_migration_002),
        ],
        "required_tables": REQUIRED_SERVER_TABLES,
    },
}


def _schema(schema):
    try:
        return SCHEMAS[schema]
    except KeyError:
        raise ValueError(f"Unknown schema: {schema}") from None


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn, schema):
    health = inspect_db_health(conn, schema)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn, schema):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in _schema(schema)["migrations"]:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn, schema)


def apply_migrations(db_or_config_or_path, schema="local"):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path, schema)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn, schema)
    finally:
        conn.close()


def inspect_db_health(conn, schema="local"):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in _schema(schema)["required_tables"].items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema": schema,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path, schema="local"):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn, schema)
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check budget offline SQLite schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    parser.add_argument("--server", action="store_true", help="Check the reference API schema instead of the local cache")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args(argv)

    schema = "server" if args.server else "local"
    if args.migrate:
        apply_migrations(args.db_path, schema=schema)
    print(json.dumps(get_db_health(args.db_path, schema=schema), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
