"""SQLite connection handling for the state database.

One connection per thread, reopened when the configured path changes.
Writes go through transaction() so a failed statement never leaves a
half-recorded run behind.

Location, first match wins:
1. set_db_path() (the CLI passes the config directory's choice here)
2. $DEPLOYKIT_DB
3. state.db inside the config directory (~/.deploykit by default)
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from deploykit.storage.models import ALL_SCHEMAS

DB_ENV_VAR = "DEPLOYKIT_DB"
DB_FILENAME = "state.db"
SCHEMA_VERSION = 1

_local = threading.local()
_db_path: Path | None = None


def resolve_db_path(config_dir: Path | None = None) -> Path:
    """Where the state database lives when nothing was set explicitly."""
    env_db = os.getenv(DB_ENV_VAR)
    if env_db:
        return Path(env_db).expanduser()
    return (config_dir or Path.home() / ".deploykit") / DB_FILENAME


def set_db_path(path: Path | str | None) -> None:
    """Pin the database file; None falls back to resolve_db_path()."""
    global _db_path
    close_db()
    _db_path = Path(path) if path is not None else None


def get_db_path() -> Path:
    return _db_path or resolve_db_path()


def init_db() -> Path:
    """Create the database and its tables if missing. Returns its path.

    The directory is created with mode 700.
    """
    path = get_db_path()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    with transaction() as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise sqlite3.DatabaseError(
                f"{path} was written by a newer deploykit (schema {version}, expected {SCHEMA_VERSION})"
            )
        for ddl in ALL_SCHEMAS:
            conn.execute(ddl)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    return path


def get_db() -> sqlite3.Connection:
    """Thread-local connection to the current database path."""
    path = get_db_path()
    conn = getattr(_local, "connection", None)
    if conn is not None and getattr(_local, "path", None) != path:
        close_db()
        conn = None
    if conn is None:
        conn = _connect(path)
        _local.connection = conn
        _local.path = path
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back if the block raises."""
    conn = get_db()
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def close_db() -> None:
    conn = getattr(_local, "connection", None)
    if conn is not None:
        conn.close()
    _local.connection = None
    _local.path = None


def _connect(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn
