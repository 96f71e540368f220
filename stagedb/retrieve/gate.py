"""
stagedb Gate — what caller SQL may run against a staged dataset.

Two layers:
    check_query(sql)   prefix allow list + blocked patterns + single statement.
                       Returns the query kind or raises QueryRejected.
    guarded(db)        context manager installing a SQLite authorizer for the
                       duration of one execution. Reads, functions, recursive
                       CTEs and temp-schema writes pass; introspection PRAGMAs
                       pass; everything else is denied at prepare time.

Kinds: select, cte, pragma, explain, create_temp, drop_temp.
"""

import logging
import re
import sqlite3
from contextlib import contextmanager
from typing import Optional

logger = logging.getLogger(__name__)


class QueryRejected(ValueError):
    """Caller SQL refused before execution."""


# ============================================================
# Text checks
# ============================================================

_ALLOWED = re.compile(
    r'^(?:'
    r'(?P<select>select)'
    r'|(?P<cte>with)'
    r'|(?P<pragma>pragma)'
    r'|(?P<explain>explain)'
    r'|(?P<create_temp>create\s+temp(?:orary)?\s+(?:table|view))'
    r'|(?P<drop_temp>drop\s+temp(?:orary)?\s+(?:table|view))'
    r')\b'
)

_BLOCKED = (
    (re.compile(r'\bdrop\s+(?:table|view|index|trigger)\b', re.I), 'DROP of a permanent object'),
    (re.compile(r'\bdelete\s+from\b', re.I), 'DELETE FROM'),
    (re.compile(r'\bupdate\b[\s\S]*?\bset\b', re.I), 'UPDATE ... SET'),
    (re.compile(r'\b(?:insert|replace)\s+(?:or\s+\w+\s+)?into\s+(?!\s|temp\.)', re.I),
     'INSERT INTO a permanent table'),
    (re.compile(r'\balter\s+table\b', re.I), 'ALTER TABLE'),
    (re.compile(r'\battach\s+(?:database\b|[\'"\w:])', re.I), 'ATTACH DATABASE'),
    (re.compile(r'\bdetach\s+(?:database\b|[\'"\w])', re.I), 'DETACH DATABASE'),
    (re.compile(r'\bvacuum\b', re.I), 'VACUUM'),
)

_LEADING_COMMENTS = re.compile(r'^(?:\s+|--[^\n]*(?:\n|$)|/\*[\s\S]*?\*/)*')


def _strip_comments_and_literals(sql: str) -> str:
    """Remove comments and blank out quoted literals for keyword checks."""
    out: list[str] = []
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if ch == '-' and sql.startswith('--', i):
            end = sql.find('\n', i)
            i = n if end == -1 else end
            continue
        if ch == '/' and sql.startswith('/*', i):
            end = sql.find('*/', i + 2)
            i = n if end == -1 else end + 2
            out.append(' ')
            continue
        if ch in ("'", '"'):
            i += 1
            while i < n:
                if sql[i] == ch:
                    if i + 1 < n and sql[i + 1] == ch:
                        i += 2
                        continue
                    i += 1
                    break
                i += 1
            out.append(' ')
            continue
        out.append(ch)
        i += 1
    return ''.join(out)


def _blocked_reason(sql: str) -> Optional[str]:
    for pattern, label in _BLOCKED:
        if pattern.search(sql):
            return label
    return None


def check_query(sql: str) -> str:
    """Validate caller SQL and return its kind.

    Raises QueryRejected with a readable reason on:
    - empty input
    - a prefix outside the allow list (leading comments ignored)
    - a blocked pattern in the raw text or the comment-stripped text
    - more than one statement
    """
    if not sql or not sql.strip():
        raise QueryRejected("Empty query")

    head = _LEADING_COMMENTS.sub('', sql).strip().lower()
    match = _ALLOWED.match(head)
    if not match:
        raise QueryRejected(
            "Only SELECT, WITH, PRAGMA, EXPLAIN and CREATE/DROP TEMP TABLE|VIEW "
            "queries are allowed")

    bare = _strip_comments_and_literals(sql)
    reason = _blocked_reason(sql) or _blocked_reason(bare)
    if reason:
        raise QueryRejected(f"Query contains a blocked operation: {reason}")

    if ';' in bare.strip().rstrip(';'):
        raise QueryRejected("Multiple statements are not allowed")

    return match.lastgroup


# ============================================================
# Authorizer
# ============================================================

_ALLOW = {
    sqlite3.SQLITE_READ,
    sqlite3.SQLITE_SELECT,
    sqlite3.SQLITE_FUNCTION,
    sqlite3.SQLITE_RECURSIVE,
    sqlite3.SQLITE_CREATE_TEMP_TABLE,
    sqlite3.SQLITE_CREATE_TEMP_VIEW,
    sqlite3.SQLITE_CREATE_TEMP_INDEX,
    sqlite3.SQLITE_DROP_TEMP_TABLE,
    sqlite3.SQLITE_DROP_TEMP_VIEW,
    sqlite3.SQLITE_DROP_TEMP_INDEX,
}

# Writes are fine when they land in the temp schema
_TEMP_WRITES = {
    sqlite3.SQLITE_INSERT,
    sqlite3.SQLITE_UPDATE,
    sqlite3.SQLITE_DELETE,
}

_READONLY_PRAGMAS = frozenset({
    'table_info',
    'table_xinfo',
    'table_list',
    'index_list',
    'index_info',
    'index_xinfo',
    'foreign_key_list',
    'foreign_key_check',
    'collation_list',
    'function_list',
    'module_list',
    'pragma_list',
    'compile_options',
    'page_count',
    'freelist_count',
    'data_version',
})

_BLOCKED_FUNCTIONS = frozenset({
    'load_extension',
    'readfile',
    'writefile',
    'edit',
    'fts3_tokenizer',
})


def _deny(action: int, arg1, arg2) -> int:
    logger.warning("Blocked SQLite action=%s arg1=%s arg2=%s", action, arg1, arg2)
    return sqlite3.SQLITE_DENY


def authorizer(action, arg1, arg2, db_name, trigger_name):
    """Authorizer for caller queries. Read-only outside the temp schema."""
    if action == sqlite3.SQLITE_FUNCTION:
        name = (arg2 or arg1 or '').lower()
        return _deny(action, arg1, arg2) if name in _BLOCKED_FUNCTIONS else sqlite3.SQLITE_OK
    if action in _ALLOW:
        return sqlite3.SQLITE_OK
    if action in _TEMP_WRITES and db_name == 'temp':
        return sqlite3.SQLITE_OK
    if action == sqlite3.SQLITE_PRAGMA and (arg1 or '').lower() in _READONLY_PRAGMAS:
        return sqlite3.SQLITE_OK
    return _deny(action, arg1, arg2)


@contextmanager
def guarded(db: sqlite3.Connection):
    """Run the enclosed statements under the caller-query authorizer."""
    db.set_authorizer(authorizer)
    try:
        yield db
    finally:
        db.set_authorizer(None)
