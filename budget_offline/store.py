import json
import logging
import sqlite3
from contextlib import asynccontextmanager

from .db import connect_db, parse_database_config
from .errors import StorageError, StorageUnavailableError, UnknownStoreError
from .migrations import apply_migrations

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
CATEGORIES = "categories"
TRANSACTIONS = "transactions"
PAYEES = "payees"
CATEGORY_GROUPS = "category_groups"
SYNC_QUEUE = "sync_queue"
METADATA = "metadata"
API_CACHE = "api_cache"

# Key column and indexed fields per store; must match the local migrations.
STORES = {
    ACCOUNTS: {"key": "id", "indexes": ("user_id", "is_active")},
    CATEGORIES: {"key": "id", "indexes": ("type", "group_id")},
    TRANSACTIONS: {"key": "id", "indexes": ("account_id", "category_id", "date", "description")},
    PAYEES: {"key": "id", "indexes": ("name",)},
    CATEGORY_GROUPS: {"key": "id", "indexes": ("sort_order",)},
    SYNC_QUEUE: {"key": "id", "indexes": ("timestamp",)},
    METADATA: {"key": "key", "indexes": ()},
    API_CACHE: {"key": "url", "indexes": ("timestamp",)},
}

ENTITY_STORES = (ACCOUNTS, CATEGORIES, TRANSACTIONS, PAYEES, CATEGORY_GROUPS)


def _column_value(value):
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def _store_spec(store_name):
    try:
        return STORES[store_name]
    except KeyError:
        raise UnknownStoreError(f"Unknown local store: {store_name}") from None


class LocalStore:
    """Durable record storage backed by a single SQLite file.

    Every store is a table holding the JSON record plus the columns it is
    indexed by. The coroutine methods never yield to the event loop: the
    sqlite3 calls run inline and block it for their duration. Each operation is
    therefore atomic with respect to other coroutines on the same loop.
    """

    def __init__(self, database_path):
        self.config = parse_database_config(database_path)
        self._conn = None
        self._transaction_depth = 0

    @property
    def path(self):
        return self.config["database_path"]

    @property
    def is_open(self):
        return self._conn is not None

    async def open(self):
        if self._conn is not None:
            return self._conn

        conn = None
        try:
            conn = connect_db(self.config)
            apply_migrations(conn, schema="local")
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            if conn is not None:
                conn.close()
            message = f"Unable to open local store at {self.path}: {exc}"
            logger.error(message)
            raise StorageUnavailableError(message) from exc

        self._conn = conn
        logger.debug("Opened local store at %s", self.path)
        return conn

    def close(self):
        conn, self._conn = self._conn, None
        self._transaction_depth = 0
        if conn is not None:
            conn.close()

    @asynccontextmanager
    async def transaction(self):
        """Run the enclosed store operations as one SQLite transaction."""
        await self.open()
        self._transaction_depth += 1
        try:
            yield self
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                self._conn.rollback()
            raise
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            self._conn.commit()

    def _commit(self):
        if self._transaction_depth == 0:
            self._conn.commit()

    def _rollback(self):
        if self._transaction_depth == 0:
            self._conn.rollback()

    def _row_values(self, store_name, spec, item):
        if not isinstance(item, dict):
            raise StorageError(f"Records stored in {store_name} must be mappings, got {type(item).__name__}")
        key_value = item.get(spec["key"])
        if key_value is None:
            raise StorageError(f"Record for {store_name} is missing its '{spec['key']}' key")
        values = [key_value]
        values.extend(_column_value(item.get(field)) for field in spec["indexes"])
        values.append(json.dumps(item, sort_keys=True))
        return values

    def _upsert_sql(self, store_name, spec):
        columns = [spec["key"], *spec["indexes"], "data"]
        placeholders = ", ".join(["?"] * len(columns))
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns[1:])
        return (
            f"INSERT INTO {store_name} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({spec['key']}) DO UPDATE SET {updates}"
        )

    def _write(self, sql, rows):
        try:
            self._conn.executemany(sql, rows)
        except sqlite3.Error as exc:
            self._rollback()
            raise StorageError(str(exc)) from exc
        self._commit()

    async def get_all(self, store_name):
        _store_spec(store_name)
        conn = await self.open()
        rows = conn.execute(f"SELECT data FROM {store_name} ORDER BY rowid").fetchall()
        return [json.loads(row["data"]) for row in rows]

    async def get_by_id(self, store_name, key):
        spec = _store_spec(store_name)
        conn = await self.open()
        row = conn.execute(
            f"SELECT data FROM {store_name} WHERE {spec['key']} = ?",
            (key,),
        ).fetchone()
        return json.loads(row["data"]) if row is not None else None

    async def get_by_index(self, store_name, index_name, value):
        spec = _store_spec(store_name)
        if index_name not in spec["indexes"]:
            raise UnknownStoreError(f"Store {store_name} has no index named {index_name}")
        conn = await self.open()
        rows = conn.execute(
            f"SELECT data FROM {store_name} WHERE {index_name} = ? ORDER BY rowid",
            (_column_value(value),),
        ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    async def count(self, store_name):
        _store_spec(store_name)
        conn = await self.open()
        row = conn.execute(f"SELECT COUNT(*) FROM {store_name}").fetchone()
        return int(row[0])

    async def put_one(self, store_name, item):
        spec = _store_spec(store_name)
        await self.open()
        self._write(self._upsert_sql(store_name, spec), [self._row_values(store_name, spec, item)])

    async def put_many(self, store_name, items):
        spec = _store_spec(store_name)
        # Validate every record before touching the table so a bad batch writes nothing.
        rows = [self._row_values(store_name, spec, item) for item in items]
        if not rows:
            return
        await self.open()
        self._write(self._upsert_sql(store_name, spec), rows)

    async def delete_one(self, store_name, key):
        spec = _store_spec(store_name)
        await self.open()
        self._write(f"DELETE FROM {store_name} WHERE {spec['key']} = ?", [(key,)])

    async def clear_store(self, store_name):
        _store_spec(store_name)
        await self.open()
        self._write(f"DELETE FROM {store_name}", [()])
