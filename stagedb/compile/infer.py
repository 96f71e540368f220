"""
stagedb Infer — schema-less JSON in, relational staging plan out.

One depth-first pass over the document. Objects that look like entities
become rows of a table named after their type; everything else folds into
the row that contains it. networkx holds the type-to-type relationships
the pass observes.

Entity heuristic:
    has `id` or `_id`                                     -> entity
    >= 2 fields and one of name/title/description/type    -> entity
    anything else                                         -> folded

Type name: discriminator field (`__typename`) -> singularized JSON key -> 'entity'

Field rules inside a row:
    scalar                       column, type observed
    bool                         0/1 INTEGER
    int outside signed 64-bit    TEXT
    entity                       <field>_id, copied from the referenced row
    entity list / connection     junction rows, no column
    object with scalars          <field>_<sub> columns, recursively
    object without scalars       <field>_json
    leftover list items          <field>_json

Column type per table = union across instances; TEXT > REAL > INTEGER.

Fallback when no entity exists anywhere:
    scalar document -> scalar_data(value)
    list document   -> array_data, one row per element
    object document -> root_object, one flattened row
"""

import json
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

import networkx as nx

from stagedb.compile.naming import (
    junction_name, sanitize_column, sanitize_table, type_name_for_key,
)
from stagedb.config import StagingConfig

ENTITY_HINTS = ('name', 'title', 'description', 'type')
ENVELOPE_KEYS = frozenset({'data', 'errors', 'extensions'})
CONNECTION_KEYS = frozenset({'edges', 'nodes', 'pageInfo', 'totalCount', '__typename'})

_INT64_MIN, _INT64_MAX = -(2 ** 63), 2 ** 63 - 1

SURROGATE_PK = 'INTEGER PRIMARY KEY AUTOINCREMENT'


# ============================================================
# Plan types
# ============================================================

@dataclass
class TableSchema:
    name: str
    columns: dict[str, str] = field(default_factory=dict)  # column -> declared type
    kind: str = 'entity'  # entity | junction | fallback
    foreign_keys: dict[str, str] = field(default_factory=dict)  # column -> table
    unique: tuple[str, ...] = ()
    degraded: bool = False

    @property
    def pk_type(self) -> str:
        return self.columns['id'].split()[0]


@dataclass(eq=False)
class EntityRecord:
    """One row to write. `values` may hold EntityRecord refs for FK columns."""
    table: str
    key: Any = None  # stored id value when the source supplied one
    values: dict[str, Any] = field(default_factory=dict)
    row_id: Any = None  # assigned at insert

    @property
    def ref_value(self):
        return self.key if self.key is not None else self.row_id


@dataclass
class StagingPlan:
    tables: dict[str, TableSchema]
    relationships: nx.Graph
    records: list[EntityRecord]  # completion order, children first
    links: list[tuple[EntityRecord, EntityRecord]]  # (parent, child) via lists
    fallback: bool = False

    def junction_for(self, a: str, b: str) -> Optional[TableSchema]:
        if not self.relationships.has_edge(a, b):
            return None
        name = self.relationships.edges[a, b].get('junction')
        return self.tables.get(name) if name else None

    def relationships_of(self, table: str) -> list[dict]:
        """Relationship summary for one table, as reported after staging."""
        out = []
        schema = self.tables[table]
        for column, target in sorted(schema.foreign_keys.items()):
            out.append({'type': 'foreign_key', 'column': column, 'references': target})
        if schema.kind == 'entity' and table in self.relationships:
            for other in sorted(self.relationships.neighbors(table)):
                data = self.relationships.edges[table, other]
                if data.get('junction'):
                    out.append({
                        'type': 'junction_table',
                        'table': data['junction'],
                        'related': other,
                        'fields': sorted(data['fields']),
                    })
        return out


# ============================================================
# Classification
# ============================================================

def is_entity(obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    if 'id' in obj or '_id' in obj:
        return True
    return len(obj) >= 2 and any(k in obj for k in ENTITY_HINTS)


def connection_nodes(obj: Any) -> Optional[list]:
    """Node list of a GraphQL connection wrapper, or None if obj isn't one.

    Only wrappers made of connection keys qualify, so an entity carrying
    its own `edges` or `nodes` field stays an entity.
    """
    if not isinstance(obj, dict) or not set(obj) <= CONNECTION_KEYS:
        return None
    edges = obj.get('edges')
    if isinstance(edges, list):
        if not all(isinstance(e, dict) and 'node' in e for e in edges):
            return None
        return [e['node'] for e in edges if e['node'] is not None]
    nodes = obj.get('nodes')
    if isinstance(nodes, list):
        return [n for n in nodes if n is not None]
    return None


def unwrap_envelope(document: Any) -> Any:
    """{"data": ..., "errors": ...} -> the data payload."""
    if (isinstance(document, dict) and 'data' in document
            and set(document) <= ENVELOPE_KEYS
            and isinstance(document['data'], (dict, list))):
        return document['data']
    return document


def sql_type(value: Any) -> Optional[str]:
    """SQL type a scalar contributes. None contributes nothing."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 'INTEGER'
    if isinstance(value, int):
        return 'INTEGER' if _INT64_MIN <= value <= _INT64_MAX else 'TEXT'
    if isinstance(value, float):
        return 'REAL'
    return 'TEXT'


def storable(value: Any) -> Any:
    """Scalar as it is written to the store."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int) and not _INT64_MIN <= value <= _INT64_MAX:
        return str(value)
    return value


def resolve_type(types: set[str]) -> str:
    for candidate in ('TEXT', 'REAL', 'INTEGER'):
        if candidate in types:
            return candidate
    return 'TEXT'


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (dict, list))


def _scalar_id(value: Any) -> bool:
    return value is not None and not isinstance(value, (bool, dict, list))


def _claim(name: str, taken: set[str]) -> str:
    """First free variant of name among sibling columns: name, name_2, name_3..."""
    if name not in taken:
        taken.add(name)
        return name
    n = 2
    while f'{name}_{n}' in taken:
        n += 1
    name = f'{name}_{n}'
    taken.add(name)
    return name


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


# ============================================================
# Walker
# ============================================================

class _Walker:
    """Transient state for one inference pass. Never shared between calls."""

    def __init__(self, config: StagingConfig):
        self.config = config
        self.discriminators = tuple(config.discriminator_fields)
        self.records: list[EntityRecord] = []
        self.links: list[tuple[EntityRecord, EntityRecord]] = []
        self.graph = nx.Graph()
        self._by_key: dict[tuple[str, Any], EntityRecord] = {}
        self._by_node: dict[int, EntityRecord] = {}
        self._nodes: list[Any] = []  # keeps id() keys valid for the pass
        self._observed: dict[str, dict[str, set[str]]] = defaultdict(dict)
        self._foreign: dict[str, dict[str, str]] = defaultdict(dict)
        self._order: list[str] = []

    # -- bookkeeping ---------------------------------------------------

    def _observe(self, table: str, column: str, value_type: Optional[str]):
        if table not in self._observed:
            self._order.append(table)
        types = self._observed[table].setdefault(column, set())
        if value_type:
            types.add(value_type)

    def _relate(self, parent: EntityRecord, child: EntityRecord, via: str, many: bool):
        if parent.table == child.table:
            return
        if not self.graph.has_edge(parent.table, child.table):
            self.graph.add_edge(parent.table, child.table, fields=set(), many=False)
        data = self.graph.edges[parent.table, child.table]
        data['fields'].add(f'{parent.table}.{via}')
        data['many'] = data['many'] or many
        if many:
            self.links.append((parent, child))

    def type_name(self, obj: dict, key: Optional[str]) -> str:
        for name in self.discriminators:
            value = obj.get(name)
            if isinstance(value, str) and value.strip():
                return sanitize_table(value)
        if key:
            return type_name_for_key(key)
        return 'entity'

    # -- traversal -----------------------------------------------------

    def walk(self, node: Any, key: Optional[str] = None,
             owner: Optional[EntityRecord] = None):
        """Discover entities anywhere under node. Found ones link to owner."""
        if isinstance(node, list):
            for item in node:
                self.walk(item, key, owner)
            return
        if not isinstance(node, dict):
            return
        nodes = connection_nodes(node)
        if nodes is not None:
            for item in nodes:
                self.walk(item, key, owner)
        elif is_entity(node):
            child = self.entity(node, key)
            if owner is not None:
                self._relate(owner, child, key or 'entity', many=True)
        else:
            for k, v in node.items():
                if k not in self.discriminators:
                    self.walk(v, k, owner)

    def entity(self, obj: dict, key: Optional[str]) -> EntityRecord:
        """Record obj under its type (merging duplicates) and return its row."""
        table = self.type_name(obj, key)
        raw_id = obj.get('id')
        if _scalar_id(raw_id):
            existing = self._by_key.get((table, raw_id))
        else:
            existing = self._by_node.get(id(obj))

        record = existing or EntityRecord(table)
        if existing is None:
            self._nodes.append(obj)
            self._by_node[id(obj)] = record
            if _scalar_id(raw_id):
                record.key = storable(raw_id)
                self._by_key[(table, raw_id)] = record
            self.graph.add_node(table)
            self._observe(table, 'id', sql_type(record.key))

        values: dict[str, Any] = {}
        taken = {'id'}
        if record.key is not None:
            values['id'] = record.key
        for k, v in obj.items():
            if (k == 'id' and _scalar_id(v)) or k in self.discriminators:
                continue
            self.field(table, values, taken, k, v, '', record)

        # Later occurrences only fill what is still empty
        for column, value in values.items():
            if record.values.get(column) is None:
                record.values[column] = value

        if existing is None:
            self.records.append(record)
        return record

    def field(self, table: str, values: dict, taken: set[str], key: str,
              value: Any, prefix: str, owner: Optional[EntityRecord]):
        """Fold one JSON field into a row."""
        column = sanitize_column(key)
        if prefix:
            column = sanitize_column(f'{prefix}_{column}')

        if _is_scalar(value):
            column = _claim(column, taken)
            self._observe(table, column, sql_type(value))
            values[column] = storable(value)
            return

        if isinstance(value, dict):
            nodes = connection_nodes(value)
            if nodes is not None:
                self.many(table, values, taken, key, column, nodes, owner)
            elif is_entity(value):
                child = self.entity(value, key)
                column = _claim(f'{column}_id', taken)
                self._observe(table, column, sql_type(child.key) or 'INTEGER')
                self._foreign[table][column] = child.table
                values[column] = child
                if owner is not None:
                    self._relate(owner, child, key, many=False)
            elif any(_is_scalar(v) for v in value.values()):
                for k, v in value.items():
                    if k not in self.discriminators:
                        self.field(table, values, taken, k, v, column, owner)
            else:
                column = _claim(f'{column}_json', taken)
                self._observe(table, column, 'TEXT')
                values[column] = _dumps(value)
                self.walk(value, key, owner)
            return

        self.many(table, values, taken, key, column, value, owner)

    def many(self, table: str, values: dict, taken: set[str], key: str,
             column: str, items: list, owner: Optional[EntityRecord]):
        """List-valued field: entities become links, the rest JSON text."""
        rest = []
        for item in items:
            nodes = connection_nodes(item)
            if nodes is not None:
                for node in nodes:
                    self._many_item(node, key, owner, rest)
            else:
                self._many_item(item, key, owner, rest)
        if rest:
            column = _claim(f'{column}_json', taken)
            self._observe(table, column, 'TEXT')
            values[column] = _dumps(rest)
            for item in rest:
                self.walk(item, key, owner)

    def _many_item(self, item: Any, key: str, owner: Optional[EntityRecord], rest: list):
        if is_entity(item):
            child = self.entity(item, key)
            if owner is not None:
                self._relate(owner, child, key, many=True)
        elif item is not None:
            rest.append(item)

    # -- output --------------------------------------------------------

    def plan(self) -> StagingPlan:
        tables: dict[str, TableSchema] = {}
        for name in self._order:
            observed = self._observed[name]
            id_types = observed.get('id', set())
            columns = {'id': f'{resolve_type(id_types)} PRIMARY KEY' if id_types else SURROGATE_PK}
            for column, types in observed.items():
                if column != 'id':
                    columns[column] = resolve_type(types)
            tables[name] = TableSchema(name, columns, foreign_keys=dict(self._foreign[name]))

        edges = sorted(self.graph.edges(data=True), key=lambda e: sorted(e[:2]))
        for a, b, data in edges:
            if not data['many']:
                continue
            first, second = sorted((a, b))
            name = junction_name(first, second)
            if name in tables:
                name = f'{name}_link'
            tables[name] = TableSchema(
                name,
                columns={
                    'id': SURROGATE_PK,
                    f'{first}_id': tables[first].pk_type,
                    f'{second}_id': tables[second].pk_type,
                },
                kind='junction',
                foreign_keys={f'{first}_id': first, f'{second}_id': second},
                unique=(f'{first}_id', f'{second}_id'),
            )
            data['junction'] = name

        return StagingPlan(tables, self.graph, self.records, self.links)


# ============================================================
# Fallback
# ============================================================

def _fallback_plan(document: Any, config: StagingConfig) -> StagingPlan:
    """Tables for a document without a single entity in it."""
    walker = _Walker(config)
    if isinstance(document, list):
        table = 'array_data'
        items = document
    elif isinstance(document, dict):
        table = 'root_object'
        items = [document]
    else:
        table = 'scalar_data'
        items = [document]

    walker._observe(table, 'id', None)
    records = []
    for item in items:
        record = EntityRecord(table)
        taken = {'id'}
        if isinstance(item, dict):
            for k, v in item.items():
                if k not in walker.discriminators:
                    walker.field(table, record.values, taken, k, v, '', None)
        else:
            walker.field(table, record.values, taken, 'value', item, '', None)
        records.append(record)

    plan = walker.plan()
    plan.tables[table].kind = 'fallback'
    plan.records = records
    plan.fallback = True
    return plan


def infer_schema(document: Any, config: Optional[StagingConfig] = None) -> StagingPlan:
    """Infer tables, relationships and rows for one decoded JSON document."""
    config = config or StagingConfig()
    if config.unwrap_envelope:
        document = unwrap_envelope(document)

    walker = _Walker(config)
    walker.walk(document)
    if not walker.records:
        return _fallback_plan(document, config)
    return walker.plan()
