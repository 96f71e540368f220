"""
stagedb Insert — write a StagingPlan into a dataset database.

Two phases, run by the caller inside one transaction:
    create_tables()   DDL per table. Existing tables gain missing columns.
                      A table whose DDL fails degrades to (id, data_json).
    insert_rows()     Phase 1: entity rows, children first, INSERT OR IGNORE.
                      Phase 2: junction rows, one per distinct pair.

Foreign key columns hold the referenced row's id. Source ids are known up
front; surrogate ids come from lastrowid of the child written earlier.
Records without an id in a table keyed by source ids are given one before
anything is written (assign_missing_keys).
"""

import json
import logging
import sqlite3
import uuid
from typing import Optional

from stagedb.compile.infer import SURROGATE_PK, EntityRecord, StagingPlan, TableSchema
from stagedb.compile.naming import quote
from stagedb.retrieve.chunks import ChunkStore

logger = logging.getLogger(__name__)

DEGRADED_COLUMNS = {'id': SURROGATE_PK, 'data_json': 'TEXT'}


# ============================================================
# DDL
# ============================================================

def table_ddl(schema: TableSchema) -> str:
    lines = []
    for column, declared in schema.columns.items():
        line = f'{quote(column)} {declared}'
        target = schema.foreign_keys.get(column)
        if target:
            line += f' REFERENCES {quote(target)}(id)'
        lines.append(line)
    body = ',\n    '.join(lines)
    return f'CREATE TABLE IF NOT EXISTS {quote(schema.name)} (\n    {body}\n)'


def _index_ddl(schema: TableSchema) -> list[str]:
    stmts = []
    if schema.unique:
        cols = ', '.join(quote(c) for c in schema.unique)
        stmts.append(
            f'CREATE UNIQUE INDEX IF NOT EXISTS {quote(f"ux_{schema.name}_pair")} '
            f'ON {quote(schema.name)} ({cols})')
    for column in sorted(schema.foreign_keys):
        if column in schema.unique[:1]:
            continue  # leading column of the unique index already covers it
        stmts.append(
            f'CREATE INDEX IF NOT EXISTS {quote(f"idx_{schema.name}_{column}")} '
            f'ON {quote(schema.name)} ({quote(column)})')
    return stmts


def existing_columns(db: sqlite3.Connection, table: str) -> list[str]:
    return [r[1] for r in db.execute(f'PRAGMA table_info({quote(table)})').fetchall()]


def _degrade(db: sqlite3.Connection, schema: TableSchema, error: Exception):
    logger.warning("Table %s degraded to (id, data_json): %s", schema.name, error)
    schema.columns = dict(DEGRADED_COLUMNS)
    schema.foreign_keys = {}
    schema.unique = ()
    schema.degraded = True
    db.execute(table_ddl(schema))


def _create_one(db: sqlite3.Connection, schema: TableSchema):
    current = existing_columns(db, schema.name)
    if not current:
        db.execute(table_ddl(schema))
    elif set(current) == set(DEGRADED_COLUMNS) and set(schema.columns) != set(DEGRADED_COLUMNS):
        # Degraded by an earlier call; keep writing JSON rows
        schema.columns = dict(DEGRADED_COLUMNS)
        schema.foreign_keys = {}
        schema.unique = ()
        schema.degraded = True
        return
    else:
        for column, declared in schema.columns.items():
            if column not in current:
                db.execute(f'ALTER TABLE {quote(schema.name)} '
                           f'ADD COLUMN {quote(column)} {declared}')
    for stmt in _index_ddl(schema):
        db.execute(stmt)


def create_tables(db: sqlite3.Connection, plan: StagingPlan) -> list[str]:
    """Create every table of the plan. Returns names of degraded tables.

    Each table runs under its own savepoint, so a failed DDL leaves no
    half-built table behind before the fallback layout is created.
    """
    degraded = []
    for name, schema in plan.tables.items():
        db.execute('SAVEPOINT create_table')
        try:
            _create_one(db, schema)
        except sqlite3.Error as e:
            db.execute('ROLLBACK TO create_table')
            _degrade(db, schema, e)
        db.execute('RELEASE create_table')
        if schema.degraded:
            degraded.append(name)
    return degraded


# ============================================================
# Rows
# ============================================================

def _insert(db: sqlite3.Connection, table: str, row: dict) -> sqlite3.Cursor:
    if not row:
        return db.execute(f'INSERT INTO {quote(table)} DEFAULT VALUES')
    cols = ', '.join(quote(c) for c in row)
    marks = ', '.join('?' * len(row))
    return db.execute(
        f'INSERT OR IGNORE INTO {quote(table)} ({cols}) VALUES ({marks})',
        tuple(row.values()))


def _plain(value):
    return value.ref_value if isinstance(value, EntityRecord) else value


def _insert_degraded(db: sqlite3.Connection, record: EntityRecord) -> sqlite3.Cursor:
    payload = {c: _plain(v) for c, v in record.values.items()}
    row = {'data_json': json.dumps(payload, ensure_ascii=False, default=str)}
    if isinstance(record.key, int):
        row = {'id': record.key, **row}
    return _insert(db, record.table, row)


def insert_entity(db: sqlite3.Connection, schema: TableSchema, record: EntityRecord,
                  store: Optional[ChunkStore] = None) -> bool:
    """Write one entity row. Returns False when the id already existed."""
    if schema.degraded:
        cur = _insert_degraded(db, record)
        record.row_id = record.key if isinstance(record.key, int) else cur.lastrowid
        return cur.rowcount > 0

    row = {}
    pending = []
    for column, value in record.values.items():
        value = _plain(value)
        if store is not None:
            chunked = store.prepare(record.table, column, value)
            if chunked is not None:
                pending.append(chunked)
                value = chunked.token
        row[column] = value

    cur = _insert(db, record.table, row)
    inserted = cur.rowcount > 0
    record.row_id = record.key if record.key is not None else cur.lastrowid
    if inserted:
        for chunked in pending:
            store.write(chunked, record.row_id)
    return inserted


def _numeric(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def assign_missing_keys(db: sqlite3.Connection, plan: StagingPlan) -> int:
    """Give id-less records of source-keyed tables an explicit key.

    INTEGER/REAL keys continue above the largest id already stored or
    seen in the plan, so a source id written later never collides with
    them. TEXT keys get a uuid4 hex. Returns the number of keys assigned.
    """
    missing: dict[str, list[EntityRecord]] = {}
    highest: dict[str, float] = {}
    for record in plan.records:
        if _numeric(record.key):
            highest[record.table] = max(highest.get(record.table, 0), record.key)
        schema = plan.tables[record.table]
        if record.key is None and not schema.degraded and schema.columns['id'] != SURROGATE_PK:
            missing.setdefault(record.table, []).append(record)

    assigned = 0
    for table, records in missing.items():
        if plan.tables[table].pk_type == 'TEXT':
            keys = [uuid.uuid4().hex for _ in records]
        else:
            stored = db.execute(
                f"SELECT MAX(id) FROM {quote(table)} "
                f"WHERE typeof(id) IN ('integer', 'real')").fetchone()[0]
            start = int(max(stored or 0, highest.get(table, 0))) + 1
            keys = list(range(start, start + len(records)))
        for record, key in zip(records, keys):
            record.key = key
            record.values = {'id': key, **record.values}
        assigned += len(records)
    return assigned


def insert_links(db: sqlite3.Connection, plan: StagingPlan) -> dict[str, int]:
    """Phase 2: one junction row per distinct (parent, child) pair."""
    written: dict[str, int] = {}
    seen = set()
    for parent, child in plan.links:
        junction = plan.junction_for(parent.table, child.table)
        if junction is None:
            continue
        ids = {parent.table: parent.row_id, child.table: child.row_id}
        first, second = sorted(ids)
        pair = (ids[first], ids[second])
        if (junction.name, pair) in seen:
            continue
        seen.add((junction.name, pair))

        if junction.degraded:
            row = {'data_json': json.dumps(
                {f'{first}_id': pair[0], f'{second}_id': pair[1]}, default=str)}
        else:
            row = {f'{first}_id': pair[0], f'{second}_id': pair[1]}
        cur = _insert(db, junction.name, row)
        written[junction.name] = written.get(junction.name, 0) + max(cur.rowcount, 0)
    return written


def insert_rows(db: sqlite3.Connection, plan: StagingPlan,
                store: Optional[ChunkStore] = None) -> dict[str, int]:
    """Both phases. Returns rows actually written per table."""
    written: dict[str, int] = {}
    assign_missing_keys(db, plan)
    for record in plan.records:
        if insert_entity(db, plan.tables[record.table], record, store):
            written[record.table] = written.get(record.table, 0) + 1
    for name, n in insert_links(db, plan).items():
        written[name] = written.get(name, 0) + n
    return written
