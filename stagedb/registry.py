"""
stagedb Dataset Registry — access id catalog.

Single source of truth for access id → database path resolution.

Registry location: ~/.stagedb/registry.db
Datasets live at ~/.stagedb/datasets/{access_id}.db
"""

import logging
import os
import re
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# All datasets live under ~/.stagedb/ (override with STAGEDB_HOME env var)
STAGEDB_HOME = Path(os.environ.get("STAGEDB_HOME", Path.home() / ".stagedb"))
DATASETS_DIR = STAGEDB_HOME / "datasets"
REGISTRY_DB = STAGEDB_HOME / "registry.db"

_ACCESS_ID = re.compile(r'^[A-Za-z0-9_-]{1,128}$')

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS datasets (
    access_id   TEXT PRIMARY KEY,
    path        TEXT NOT NULL,
    table_count INTEGER DEFAULT 0,
    total_rows  INTEGER DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""


class DatasetNotFound(LookupError):
    """No dataset under this access id (never staged, or deleted)."""


def _open_registry() -> sqlite3.Connection:
    """Open registry.db, creating the home directory if needed."""
    REGISTRY_DB.parent.mkdir(parents=True, exist_ok=True)
    db = sqlite3.connect(str(REGISTRY_DB), timeout=5)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA journal_mode=WAL")
    db.executescript(_SCHEMA)
    return db


def new_access_id() -> str:
    return uuid.uuid4().hex


def check_access_id(access_id: str) -> str:
    """Access ids become file names; only [A-Za-z0-9_-] is accepted."""
    if not isinstance(access_id, str) or not _ACCESS_ID.match(access_id):
        raise ValueError(f"Invalid access id: {access_id!r}")
    return access_id


def dataset_path(access_id: str) -> Path:
    """Where the dataset's database file lives (whether or not it exists)."""
    return DATASETS_DIR / f"{check_access_id(access_id)}.db"


def register_dataset(access_id: str, path: str | Path,
                     table_count: int = 0, total_rows: int = 0):
    """Register a dataset or refresh its stats."""
    now = datetime.now(timezone.utc).isoformat()
    db = _open_registry()
    try:
        db.execute("""
            INSERT INTO datasets (access_id, path, table_count, total_rows,
                                  created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(access_id) DO UPDATE SET
                path = excluded.path,
                table_count = excluded.table_count,
                total_rows = excluded.total_rows,
                updated_at = excluded.updated_at
        """, (check_access_id(access_id), str(Path(path).resolve()),
              table_count, total_rows, now, now))
        db.commit()
    finally:
        db.close()


def unregister_dataset(access_id: str) -> bool:
    """Remove a dataset from the registry. Returns True if it existed."""
    db = _open_registry()
    try:
        cursor = db.execute("DELETE FROM datasets WHERE access_id = ?", (access_id,))
        db.commit()
        return cursor.rowcount > 0
    finally:
        db.close()


def resolve_dataset(access_id: str) -> Optional[Path]:
    """Resolve access id to db path. None if unregistered or the file is gone."""
    try:
        db = _open_registry()
        try:
            row = db.execute(
                "SELECT path FROM datasets WHERE access_id = ?", (access_id,)
            ).fetchone()
        finally:
            db.close()
    except sqlite3.Error as e:
        logger.warning("Registry lookup failed for %s: %s", access_id, e)
        return None
    if row:
        p = Path(row[0])
        if p.exists():
            return p
    return None


def get_dataset(access_id: str) -> dict:
    """Registry row for one dataset. Raises DatasetNotFound."""
    db = _open_registry()
    try:
        row = db.execute(
            "SELECT access_id, path, table_count, total_rows, created_at, updated_at "
            "FROM datasets WHERE access_id = ?", (access_id,)
        ).fetchone()
    finally:
        db.close()
    if row is None:
        raise DatasetNotFound(f"Dataset '{access_id}' not found")
    return dict(row)


def list_datasets() -> list[dict]:
    """All registered datasets with their stats, newest first."""
    db = _open_registry()
    try:
        rows = db.execute(
            "SELECT access_id, path, table_count, total_rows, created_at, updated_at "
            "FROM datasets ORDER BY created_at DESC, access_id"
        ).fetchall()
    finally:
        db.close()
    return [dict(r) for r in rows]
