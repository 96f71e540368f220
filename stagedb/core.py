"""
stagedb Core — dataset connections, SQL execution, metadata access.

Infrastructure plumbing. compile/ and retrieve/ take a connection from here.

Functions:
- open_dataset_db()      -> open .db (or :memory:), return conn
- transaction()          -> BEGIN/COMMIT, ROLLBACK on error
- run_sql()              -> execute SQL, return list[dict]
- get_meta/set_meta      -> _meta table access
- log_op()               -> _ops audit row
- validate_dataset()     -> post-staging integrity warnings

Connections run in autocommit mode (isolation_level=None); writes that must
land together go through transaction().
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Optional

logger = logging.getLogger(__name__)


def open_dataset_db(db_path: str = ':memory:') -> sqlite3.Connection:
    """Open a dataset database with staging settings."""
    db = sqlite3.connect(db_path, check_same_thread=False, timeout=10,
                         isolation_level=None)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA synchronous=NORMAL")
    db.execute("PRAGMA temp_store=MEMORY")
    if db_path != ':memory:':
        db.execute("PRAGMA journal_mode=WAL")
    return db


@contextmanager
def transaction(db: sqlite3.Connection):
    """One unit of work. Everything inside commits or nothing does."""
    db.execute("BEGIN")
    try:
        yield db
    except BaseException:
        # SQLite may already have rolled back on its own (SQLITE_FULL, IOERR)
        if db.in_transaction:
            db.execute("ROLLBACK")
        raise
    else:
        db.execute("COMMIT")


def run_sql(db: sqlite3.Connection, query: str,
            params: tuple = ()) -> list[dict]:
    """Execute SQL, return list of dicts."""
    rows = db.execute(query, params).fetchall()
    return [dict(r) for r in rows]


def get_meta(db: sqlite3.Connection, key: str) -> Optional[str]:
    """Read a single value from _meta table."""
    try:
        row = db.execute(
            "SELECT value FROM _meta WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None
    except sqlite3.OperationalError:
        return None


def set_meta(db: sqlite3.Connection, key: str, value: str):
    """Write a key-value pair to _meta table."""
    db.execute(
        "CREATE TABLE IF NOT EXISTS _meta (key TEXT PRIMARY KEY, value TEXT)"
    )
    db.execute(
        "INSERT OR REPLACE INTO _meta (key, value) VALUES (?, ?)",
        (key, value)
    )


def ensure_ops_table(db: sqlite3.Connection):
    """Create _ops table if it doesn't exist. Idempotent."""
    db.execute("""CREATE TABLE IF NOT EXISTS _ops (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER DEFAULT (strftime('%s','now')),
        operation TEXT,
        target TEXT,
        params TEXT,
        rows_affected INTEGER,
        success INTEGER,
        message TEXT
    )""")


def log_op(db: sqlite3.Connection, operation: str, target: str,
           params: dict = None, rows_affected: int = None,
           success: bool = True, message: str = None):
    """Record a staging call in _ops."""
    ensure_ops_table(db)
    db.execute(
        "INSERT INTO _ops (operation, target, params, rows_affected, success, message) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (operation, target,
         json.dumps(params, default=str) if params else None,
         rows_affected, int(success), message))


def validate_dataset(db: sqlite3.Connection) -> list[str]:
    """Post-staging integrity checks. Returns warnings, never raises.

    Foreign keys are not enforced while staging; dangling references
    surface here instead.
    """
    warnings = []
    try:
        rows = db.execute("PRAGMA foreign_key_check").fetchall()
    except sqlite3.DatabaseError as e:
        warnings.append(f"foreign key check failed: {e}")
        rows = []

    dangling: dict[tuple[str, str], int] = {}
    for row in rows:
        key = (row[0], row[2])
        dangling[key] = dangling.get(key, 0) + 1
    for (table, parent), n in sorted(dangling.items()):
        warnings.append(f"{n} rows in {table} reference missing {parent} rows")

    for w in warnings:
        logger.warning("Integrity: %s", w)
    return warnings
