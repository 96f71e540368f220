"""
Identifier hygiene for staged tables and columns.

JSON keys arrive in every shape (camelCase, kebab-case, leading digits,
unicode, SQL keywords). Everything that becomes a table or column name
passes through here first.

Rules:
- lowercase [a-z0-9_] only, camelCase split to snake_case
- repeated underscores collapsed
- never starts with a digit
- SQL keywords get a trailing underscore
- table names never start with '_' (reserved for _meta, _ops, _chunks)
  or 'sqlite_' (reserved by SQLite)
"""

import re

# SQLite keywords that break unquoted DDL/DML or read ambiguously in queries.
SQL_RESERVED = frozenset({
    'abort', 'action', 'add', 'after', 'all', 'alter', 'always', 'analyze',
    'and', 'as', 'asc', 'attach', 'autoincrement', 'before', 'begin',
    'between', 'by', 'cascade', 'case', 'cast', 'check', 'collate', 'column',
    'commit', 'conflict', 'constraint', 'create', 'cross', 'current',
    'current_date', 'current_time', 'current_timestamp', 'database',
    'default', 'deferrable', 'deferred', 'delete', 'desc', 'detach',
    'distinct', 'do', 'drop', 'each', 'else', 'end', 'escape', 'except',
    'exclude', 'exclusive', 'exists', 'explain', 'fail', 'filter', 'first',
    'following', 'for', 'foreign', 'from', 'full', 'generated', 'glob',
    'group', 'groups', 'having', 'if', 'ignore', 'immediate', 'in', 'index',
    'indexed', 'initially', 'inner', 'insert', 'instead', 'intersect',
    'into', 'is', 'isnull', 'join', 'key', 'last', 'left', 'like', 'limit',
    'match', 'materialized', 'natural', 'no', 'not', 'nothing', 'notnull',
    'null', 'nulls', 'of', 'offset', 'on', 'or', 'order', 'others', 'outer',
    'over', 'partition', 'plan', 'pragma', 'preceding', 'primary', 'query',
    'raise', 'range', 'recursive', 'references', 'regexp', 'reindex',
    'release', 'rename', 'replace', 'restrict', 'returning', 'right',
    'rollback', 'row', 'rowid', 'rows', 'savepoint', 'select', 'set',
    'table', 'temp', 'temporary', 'then', 'ties', 'to', 'transaction',
    'trigger', 'unbounded', 'union', 'unique', 'update', 'using', 'vacuum',
    'values', 'view', 'virtual', 'when', 'where', 'window', 'with',
    'without', 'oid', '_rowid_',
})

_CAMEL_LOWER = re.compile(r'([a-z0-9])([A-Z])')
_CAMEL_UPPER = re.compile(r'([A-Z]+)([A-Z][a-z])')
_INVALID = re.compile(r'[^a-z0-9_]')
_UNDERSCORES = re.compile(r'_+')

_IRREGULAR = {
    'children': 'child',
    'people': 'person',
    'men': 'man',
    'women': 'woman',
    'indices': 'index',
    'matrices': 'matrix',
    'vertices': 'vertex',
    'analyses': 'analysis',
    'criteria': 'criterion',
    'phenomena': 'phenomenon',
    'aliases': 'alias',
    'series': 'series',
    'species': 'species',
}


def snake_case(name: str) -> str:
    """camelCase / PascalCase / kebab-case -> lowercase snake_case (unsanitized)."""
    s = _CAMEL_UPPER.sub(r'\1_\2', str(name))
    s = _CAMEL_LOWER.sub(r'\1_\2', s)
    return s.lower()


def sanitize_column(name: str) -> str:
    """Column name: [a-z0-9_], no leading digit, keyword-safe.

    Leading underscores survive (`_id` stays `_id`) so source fields are
    not silently promoted to the primary key.
    """
    s = _INVALID.sub('_', snake_case(name))
    s = _UNDERSCORES.sub('_', s)
    if s.strip('_') == '':
        return 'field'
    if len(s) > 1:
        s = s.rstrip('_') or s
    if s[0].isdigit():
        s = f'_{s}'
    if s in SQL_RESERVED:
        s = f'{s}_'
    return s


def sanitize_table(name: str) -> str:
    """Table name: like columns, but never starts with '_'."""
    s = _INVALID.sub('_', snake_case(name))
    s = _UNDERSCORES.sub('_', s).strip('_')
    if not s:
        return 'entity'
    if s[0].isdigit() or s.startswith('sqlite_'):
        s = f't_{s}'
    if s in SQL_RESERVED:
        s = f'{s}_'
    return s


def singularize(word: str) -> str:
    """Best-effort English singular for the last segment of a snake_case name."""
    head, sep, last = word.rpartition('_')
    if last in _IRREGULAR:
        return f'{head}{sep}{_IRREGULAR[last]}'
    if len(last) <= 3:
        return word
    if last.endswith('ies'):
        last = last[:-3] + 'y'
    elif last.endswith(('sses', 'uses', 'xes', 'zes', 'ches', 'shes')):
        last = last[:-2]
    elif last.endswith('s') and not last.endswith(('ss', 'us', 'is')):
        last = last[:-1]
    return f'{head}{sep}{last}'


def type_name_for_key(key: str) -> str:
    """JSON key an entity was found under -> table name (`evidenceItems` -> `evidence_item`)."""
    return sanitize_table(singularize(sanitize_table(key)))


def junction_name(a: str, b: str) -> str:
    """Junction table for an unordered type pair, named in sorted order."""
    first, second = sorted((a, b))
    return f'{first}_{second}'


def quote(identifier: str) -> str:
    """Bracket-quote an identifier for interpolation into SQL."""
    return f'[{identifier}]'
