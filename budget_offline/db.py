import os
import sqlite3
from pathlib import Path


def parse_database_config(database_path=None, env_var=None):
    if env_var:
        env_path = os.environ.get(env_var, "").strip()
        if env_path:
            database_path = env_path
    if not database_path:
        raise ValueError("A SQLite database path is required")

    database_path = str(database_path)
    return {
        "backend": "sqlite",
        "database_path": database_path,
        "database_name": Path(database_path).name if database_path != ":memory:" else "memory",
    }


def connect_db(config):
    db_path = config["database_path"]
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn
