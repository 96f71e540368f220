"""
stagedb Introspect — describe a dataset from sqlite_master and PRAGMAs.

The database is the source of truth for what was staged. Internal tables
(`_meta`, `_ops`, `_chunks`) and SQLite's own never show up.
"""

import sqlite3

from stagedb.compile.naming import quote
from stagedb.core import run_sql
from stagedb.retrieve.chunks import resolve_rows


def _is_internal(name: str) -> bool:
    return name.startswith('_') or name.startswith('sqlite_')


def list_tables(db: sqlite3.Connection) -> list[str]:
    """Staged table names, sorted."""
    rows = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    ).fetchall()
    return [r[0] for r in rows if not _is_internal(r[0])]


def table_columns(db: sqlite3.Connection, table: str) -> dict[str, str]:
    """{column: declared type}, primary key marked."""
    columns = {}
    for c in db.execute(f"PRAGMA table_info({quote(table)})").fetchall():
        name, dtype, pk = c[1], c[2] or 'TEXT', bool(c[5])
        columns[name] = f'{dtype} PRIMARY KEY' if pk else dtype
    return columns


def table_foreign_keys(db: sqlite3.Connection, table: str) -> list[dict]:
    rows = db.execute(f"PRAGMA foreign_key_list({quote(table)})").fetchall()
    return [{'column': r[3], 'references': r[2], 'to': r[4]} for r in rows]


def table_indexes(db: sqlite3.Connection, table: str) -> list[dict]:
    indexes = []
    for r in db.execute(f"PRAGMA index_list({quote(table)})").fetchall():
        name, unique = r[1], bool(r[2])
        cols = [c[2] for c in db.execute(f"PRAGMA index_info({quote(name)})").fetchall()]
        indexes.append({'name': name, 'unique': unique, 'columns': cols})
    return indexes


def row_count(db: sqlite3.Connection, table: str) -> int:
    return db.execute(f"SELECT COUNT(*) FROM {quote(table)}").fetchone()[0]


def sample_rows(db: sqlite3.Connection, table: str, limit: int = 3) -> list[dict]:
    """First rows of a table, chunked values reassembled."""
    rows = run_sql(db, f"SELECT * FROM {quote(table)} ORDER BY rowid LIMIT ?", (limit,))
    resolved, _ = resolve_rows(db, rows)
    return resolved


def describe_table(db: sqlite3.Connection, table: str, limit: int = 3) -> dict:
    return {
        'columns': table_columns(db, table),
        'foreign_keys': table_foreign_keys(db, table),
        'indexes': table_indexes(db, table),
        'row_count': row_count(db, table),
        'sample_data': sample_rows(db, table, limit),
    }


def describe(db: sqlite3.Connection, limit: int = 3) -> dict[str, dict]:
    """Every staged table, described."""
    return {t: describe_table(db, t, limit) for t in list_tables(db)}
