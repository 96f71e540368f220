"""
stagedb Chunks — oversized field values, split on write, reassembled on read.

The store enforces a per-value ceiling. A text or JSON value whose UTF-8
length crosses its column's threshold is cut into fixed-size pieces kept in
_chunks; the row itself holds a compact token. Query results pass through
resolve_rows(), which swaps every token back for the original text.

_chunks layout:
    chunk_key    uuid4 hex, the token payload
    table_name   staged table the value belongs to
    column_name  column the value belongs to
    row_id       primary key of the owning row (TEXT, any id type)
    piece        0-based piece index
    content      raw UTF-8 bytes of the piece

Rules:
    ChunkRule(column, table='*', threshold, priority, reason)
    priority: 'never'      -> always inline, wins over every other rule
              'always'     -> this rule's threshold beats size-based rules
              'size-based' -> ordinary threshold
    Columns without a rule use ChunkConfig.max_value_bytes.
"""

import logging
import re
import sqlite3
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from stagedb.compile.naming import sanitize_column, sanitize_table

logger = logging.getLogger(__name__)

NEVER, ALWAYS, SIZE_BASED = 'never', 'always', 'size-based'
_PRIORITY_RANK = {ALWAYS: 0, SIZE_BASED: 1}

TOKEN_PREFIX = '__stagedb_chunked__:'
_TOKEN = re.compile(r'^__stagedb_chunked__:([0-9a-f]{32})$')

# SQLite's historical host-parameter ceiling is 999
_LOOKUP_BATCH = 500

CHUNKS_DDL = """
CREATE TABLE IF NOT EXISTS _chunks (
    chunk_key   TEXT NOT NULL,
    table_name  TEXT NOT NULL,
    column_name TEXT NOT NULL,
    row_id      TEXT,
    piece       INTEGER NOT NULL,
    content     BLOB NOT NULL,
    PRIMARY KEY (chunk_key, piece)
);
CREATE INDEX IF NOT EXISTS idx_chunks_owner
    ON _chunks(table_name, column_name, row_id, piece);
"""


@dataclass(frozen=True)
class ChunkRule:
    """Chunking policy for one column, on one table or on all ('*')."""
    column: str
    table: str = '*'
    threshold: Optional[int] = None
    priority: str = SIZE_BASED
    reason: str = ''

    def __post_init__(self):
        if self.priority not in (NEVER, ALWAYS, SIZE_BASED):
            raise ValueError(f"Unknown chunk priority: {self.priority!r}")
        if self.threshold is not None and self.threshold <= 0:
            raise ValueError(f"Chunk threshold must be positive, got {self.threshold}")
        # Rules are written against GraphQL names; staged names are sanitized
        object.__setattr__(self, 'column', sanitize_column(self.column))
        if self.table != '*':
            object.__setattr__(self, 'table', sanitize_table(self.table))

    def matches(self, table: str, column: str) -> bool:
        return self.column == column and self.table in ('*', table)


# Static rule table. Column names are the staged ones: nested JSON and
# non-entity connections land in <field>_json columns.
DEFAULT_RULES = (
    ChunkRule('id', priority=NEVER, reason='ID fields are never chunked'),
    ChunkRule('entrez_id', priority=NEVER, reason='External ID fields are never chunked'),
    ChunkRule('pmc_id', priority=NEVER, reason='External ID fields are never chunked'),
    ChunkRule('citation_id', priority=NEVER, reason='External ID fields are never chunked'),

    ChunkRule('description', 'EvidenceItem', 2048, ALWAYS, 'Evidence descriptions are typically very long'),
    ChunkRule('description', 'Gene', 1024, ALWAYS, 'Gene descriptions can be extensive'),
    ChunkRule('abstract', 'Source', 4096, ALWAYS, 'Paper abstracts are typically long'),
    ChunkRule('statement', '*', 2048, ALWAYS, 'Statement fields contain detailed explanations'),
    ChunkRule('summary', '*', 1024, ALWAYS, 'Summary fields are often long'),

    ChunkRule('my_gene_info_details_json', 'Gene', 8192, SIZE_BASED, 'External API responses can be very large'),
    ChunkRule('clinical_trials_json', '*', 4096, SIZE_BASED, 'Clinical trial arrays can be extensive'),
    ChunkRule('comments_json', '*', 8192, SIZE_BASED, 'Comment connections can hold many large objects'),
    ChunkRule('events_json', '*', 6144, SIZE_BASED, 'Event connections can be extensive'),
    ChunkRule('revisions_json', '*', 6144, SIZE_BASED, 'Revision connections can be extensive'),
    ChunkRule('flags_json', '*', 4096, SIZE_BASED, 'Flag connections carry detailed flag information'),

    ChunkRule('name', '*', 256, SIZE_BASED, 'Names are usually short but some are long'),
    ChunkRule('full_name', '*', 512, SIZE_BASED, 'Full names run longer than names'),
    ChunkRule('title', '*', 1024, SIZE_BASED, 'Titles can be moderately long'),
    ChunkRule('citation', '*', 2048, SIZE_BASED, 'Citations can be long formatted strings'),
)


@dataclass
class PendingValue:
    """A value cut into pieces, waiting for its row id."""
    key: str
    table: str
    column: str
    pieces: list[bytes]

    @property
    def token(self) -> str:
        return f'{TOKEN_PREFIX}{self.key}'


def ensure_chunks_table(db: sqlite3.Connection):
    """Create _chunks if it doesn't exist. Idempotent."""
    for stmt in CHUNKS_DDL.split(';'):
        if stmt.strip():
            db.execute(stmt)


def is_token(value) -> bool:
    return isinstance(value, str) and _TOKEN.match(value) is not None


class ChunkStore:
    """Write side of the chunked field store for one staging call."""

    def __init__(self, db: sqlite3.Connection, config):
        self.db = db
        self.config = config
        self._thresholds: dict[tuple[str, str], Optional[int]] = {}
        # {table: {column, ...}}, reported in staging metadata
        self.chunked_fields: dict[str, set[str]] = defaultdict(set)
        self._table_ready = False

    def threshold_for(self, table: str, column: str) -> Optional[int]:
        """Byte length above which a value is chunked. None means never."""
        key = (table, column)
        if key in self._thresholds:
            return self._thresholds[key]

        ceiling = self.config.max_value_bytes
        matching = [r for r in self.config.rules if r.matches(table, column)]
        if any(r.priority == NEVER for r in matching):
            threshold = None
        elif not matching:
            threshold = ceiling
        else:
            best = min(matching, key=lambda r: (
                _PRIORITY_RANK[r.priority],
                r.table == '*',
                r.threshold or ceiling,
            ))
            threshold = min(best.threshold or ceiling, ceiling)

        self._thresholds[key] = threshold
        return threshold

    def prepare(self, table: str, column: str, value) -> Optional[PendingValue]:
        """Cut value into pieces if it crosses its threshold, else None."""
        if not self.config.enabled or not isinstance(value, str):
            return None
        threshold = self.threshold_for(table, column)
        if threshold is None:
            return None
        data = value.encode('utf-8')
        if len(data) <= threshold:
            return None

        size = self.config.piece_size
        pieces = [data[i:i + size] for i in range(0, len(data), size)]
        return PendingValue(uuid.uuid4().hex, table, column, pieces)

    def write(self, pending: PendingValue, row_id):
        """Persist pieces once the owning row exists."""
        if not self._table_ready:
            ensure_chunks_table(self.db)
            self._table_ready = True
        self.db.executemany(
            "INSERT OR REPLACE INTO _chunks "
            "(chunk_key, table_name, column_name, row_id, piece, content) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [(pending.key, pending.table, pending.column,
              None if row_id is None else str(row_id), i, piece)
             for i, piece in enumerate(pending.pieces)])
        self.chunked_fields[pending.table].add(pending.column)


def _fetch_values(db: sqlite3.Connection, keys: list[str]) -> dict[str, str]:
    """Reassemble {chunk_key: original text} for the given keys."""
    buffers: dict[str, list[bytes]] = defaultdict(list)
    for start in range(0, len(keys), _LOOKUP_BATCH):
        batch = keys[start:start + _LOOKUP_BATCH]
        placeholders = ', '.join('?' * len(batch))
        rows = db.execute(
            f"SELECT chunk_key, content FROM _chunks "
            f"WHERE chunk_key IN ({placeholders}) ORDER BY chunk_key, piece",
            batch).fetchall()
        for key, content in rows:
            buffers[key].append(bytes(content))
    return {k: b''.join(parts).decode('utf-8') for k, parts in buffers.items()}


def resolve_rows(db: sqlite3.Connection, rows: list[dict]) -> tuple[list[dict], bool]:
    """Swap chunk tokens in result cells for their original values.

    Returns (rows, resolved) where resolved is True if any cell changed.
    Tokens without stored pieces are left as they are.
    """
    keys = []
    for row in rows:
        for value in row.values():
            if is_token(value):
                keys.append(value[len(TOKEN_PREFIX):])
    if not keys:
        return rows, False

    try:
        values = _fetch_values(db, sorted(set(keys)))
    except sqlite3.OperationalError:
        logger.warning("Result holds chunk tokens but _chunks is unreadable")
        return rows, False
    if not values:
        return rows, False

    resolved = False
    out = []
    for row in rows:
        fixed = dict(row)
        for column, value in row.items():
            if is_token(value):
                original = values.get(value[len(TOKEN_PREFIX):])
                if original is not None:
                    fixed[column] = original
                    resolved = True
        out.append(fixed)
    return out, resolved
