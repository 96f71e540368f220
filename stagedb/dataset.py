"""
stagedb Dataset — one isolated staging database and its four operations.

    process(document)  infer, create, insert; one transaction per call
    query(sql)         gate, execute under the authorizer, resolve chunks
    schema()           describe every staged table
    delete()           close and remove the database

Every public operation returns a plain dict (or bool for delete). Nothing
raises past this module: failures come back as {'success': False, ...}.

Module-level process/query/schema/delete address datasets by access id
through the registry and keep opened datasets in a small cache. info() and
catalog() read the registry entries themselves.
"""

import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from stagedb.compile.infer import infer_schema, unwrap_envelope
from stagedb.compile.insert import create_tables, insert_rows
from stagedb.compile.pagination import extract_pagination
from stagedb.config import StagingConfig
from stagedb.core import (
    get_meta, log_op, open_dataset_db, set_meta, transaction, validate_dataset,
)
from stagedb.introspect import describe, row_count, sample_rows
from stagedb.registry import (
    DatasetNotFound, check_access_id, dataset_path, get_dataset, list_datasets,
    new_access_id, register_dataset, resolve_dataset, unregister_dataset,
)
from stagedb.retrieve.chunks import ChunkStore, resolve_rows
from stagedb.retrieve.gate import QueryRejected, check_query, guarded

logger = logging.getLogger(__name__)

INFERENCE_METHOD = 'structural'


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class Dataset:
    """A staged dataset. Operations on one instance are serialized."""

    def __init__(self, access_id: str, db_path: str | Path = ':memory:',
                 config: Optional[StagingConfig] = None):
        self.access_id = access_id
        self.path = str(db_path)
        self.config = config or StagingConfig()
        self.db = open_dataset_db(self.path)
        self._lock = threading.RLock()
        self.closed = False

    def _not_found(self, **extra) -> dict:
        return {
            'success': False,
            'error': f"Dataset '{self.access_id}' not found",
            'not_found': True,
            **extra,
        }

    # ============================================================
    # process
    # ============================================================

    def process(self, document: Any) -> dict:
        """Stage one decoded JSON document."""
        with self._lock:
            if self.closed:
                return self._not_found(message=f"Dataset '{self.access_id}' not found")
            start = time.perf_counter()
            try:
                plan = infer_schema(document, self.config)
                store = ChunkStore(self.db, self.config.chunking)
                with transaction(self.db):
                    degraded = create_tables(self.db, plan)
                    written = insert_rows(self.db, plan, store)
                    if get_meta(self.db, 'created_at') is None:
                        set_meta(self.db, 'created_at', _now())
                    set_meta(self.db, 'last_processed_at', _now())
                    set_meta(self.db, 'schema_inference_method', INFERENCE_METHOD)
                    log_op(self.db, 'process', self.access_id,
                           params={'tables': sorted(plan.tables), 'degraded': degraded},
                           rows_affected=sum(written.values()))
            except Exception as e:
                logger.exception("Staging failed for dataset %s", self.access_id)
                self._log_failure(e)
                return {
                    'success': False,
                    'message': f"Failed to process data: {e}",
                    'data_access_id': self.access_id,
                }

            try:
                return self._summary(document, plan, store, start)
            except sqlite3.Error as e:
                logger.exception("Summary failed for dataset %s", self.access_id)
                return {
                    'success': False,
                    'message': f"Data staged but the summary failed: {e}",
                    'data_access_id': self.access_id,
                }

    def _log_failure(self, error: Exception):
        try:
            log_op(self.db, 'process', self.access_id, success=False, message=str(error))
        except Exception:
            logger.warning("Could not record failed staging in _ops", exc_info=True)

    def _summary(self, document, plan, store: ChunkStore, start: float) -> dict:
        warnings = validate_dataset(self.db)
        chunked = {t: sorted(cols) for t, cols in store.chunked_fields.items()}

        schemas = {}
        for name, schema in plan.tables.items():
            schemas[name] = {
                'columns': dict(schema.columns),
                'row_count': row_count(self.db, name),
                'sample_data': sample_rows(self.db, name, self.config.sample_rows),
                'relationships': plan.relationships_of(name),
                '_meta': {
                    'kind': schema.kind,
                    'degraded': schema.degraded,
                    'chunked_fields': chunked.get(name, []),
                },
            }
        total_rows = sum(s['row_count'] for s in schemas.values())

        result = {
            'success': True,
            'message': f"Staged {total_rows} rows into {len(schemas)} tables",
            'data_access_id': self.access_id,
            'schemas': schemas,
            'table_count': len(schemas),
            'total_rows': total_rows,
        }
        if self.config.unwrap_envelope:
            document = unwrap_envelope(document)
        pagination = extract_pagination(document)
        if pagination.detected:
            result['pagination'] = pagination.to_dict()
        result['_meta'] = {
            'processing_time_ms': _elapsed_ms(start),
            'schema_inference_method': INFERENCE_METHOD,
            'chunking_applied': bool(chunked),
            'chunked_fields': chunked,
            'integrity_warnings': warnings,
        }
        return result

    # ============================================================
    # query / schema
    # ============================================================

    def query(self, sql: str) -> dict:
        """Run caller SQL against the staged tables."""
        with self._lock:
            if self.closed:
                return self._not_found(query=sql)
            start = time.perf_counter()
            try:
                kind = check_query(sql)
            except QueryRejected as e:
                return {'success': False, 'error': str(e), 'query': sql}

            try:
                with guarded(self.db):
                    cursor = self.db.execute(sql)
                    rows = [dict(r) for r in cursor.fetchall()]
                    names = [d[0] for d in cursor.description or ()]
            except (sqlite3.Error, sqlite3.Warning) as e:
                message = str(e)
                if 'not authorized' in message.lower():
                    message = "Query not authorized: only reads and temp-schema writes are allowed"
                return {'success': False, 'error': message, 'query': sql}

            results, resolved = resolve_rows(self.db, rows)
            return {
                'success': True,
                'results': results,
                'row_count': len(results),
                'column_names': names,
                'query_type': kind,
                'chunked_content_resolved': resolved,
                'execution_time_ms': _elapsed_ms(start),
            }

    def schema(self) -> dict:
        """Columns, foreign keys, indexes, counts and samples of every table."""
        with self._lock:
            if self.closed:
                return self._not_found()
            try:
                tables = describe(self.db, self.config.sample_rows)
            except sqlite3.Error as e:
                return {'success': False, 'error': str(e)}
            return {'success': True, 'tables': tables}

    # ============================================================
    # lifecycle
    # ============================================================

    def close(self):
        with self._lock:
            if not self.closed:
                self.db.close()
                self.closed = True

    def delete(self) -> bool:
        """Close and remove the database file. False if already gone."""
        with self._lock:
            if self.closed:
                return False
            self.close()
            if self.path != ':memory:':
                for suffix in ('', '-wal', '-shm'):
                    Path(self.path + suffix).unlink(missing_ok=True)
            return True


# ============================================================
# Boundary helpers (by access id)
# ============================================================

_open: dict[str, Dataset] = {}
_open_lock = threading.Lock()


def open_dataset(access_id: str, create: bool = False,
                 config: Optional[StagingConfig] = None) -> Dataset:
    """Cached Dataset for an access id. Raises DatasetNotFound or ValueError."""
    ds = _open.get(access_id)
    if ds is not None and not ds.closed:
        return ds
    with _open_lock:
        # Re-check after acquiring lock (another thread may have opened it)
        ds = _open.get(access_id)
        if ds is not None and not ds.closed:
            return ds
        path = resolve_dataset(check_access_id(access_id))
        if path is None:
            if not create:
                raise DatasetNotFound(f"Dataset '{access_id}' not found")
            path = dataset_path(access_id)
            path.parent.mkdir(parents=True, exist_ok=True)
        ds = Dataset(access_id, path, config or StagingConfig.from_env())
        _open[access_id] = ds
        return ds


def _forget(access_id: str) -> Optional[Dataset]:
    with _open_lock:
        return _open.pop(access_id, None)


def _missing(access_id: str, **extra) -> dict:
    return {
        'success': False,
        'error': f"Dataset '{access_id}' not found",
        'not_found': True,
        **extra,
    }


def process(document: Any, access_id: Optional[str] = None,
            config: Optional[StagingConfig] = None) -> dict:
    """Stage document into the dataset (created if needed). New id if none given."""
    access_id = access_id or new_access_id()
    try:
        existed = resolve_dataset(check_access_id(access_id)) is not None
        ds = open_dataset(access_id, create=True, config=config)
    except (ValueError, OSError) as e:
        return {'success': False, 'message': str(e), 'data_access_id': access_id}

    result = ds.process(document)
    if not result['success']:
        if not existed:
            discarded = _forget(access_id)
            if discarded is not None:
                discarded.delete()
        return result

    try:
        register_dataset(access_id, ds.path, result['table_count'], result['total_rows'])
    except sqlite3.Error as e:
        logger.exception("Registry update failed for dataset %s", access_id)
        return {
            'success': False,
            'message': f"Data staged but the registry update failed: {e}",
            'data_access_id': access_id,
        }
    return result


def query(access_id: str, sql: str) -> dict:
    try:
        ds = open_dataset(access_id)
    except (DatasetNotFound, ValueError):
        return _missing(access_id, query=sql)
    return ds.query(sql)


def schema(access_id: str) -> dict:
    try:
        ds = open_dataset(access_id)
    except (DatasetNotFound, ValueError):
        return _missing(access_id)
    return ds.schema()


def delete(access_id: str) -> bool:
    """Drop the dataset and its registry entry. False if it didn't exist."""
    try:
        check_access_id(access_id)
    except ValueError:
        return False
    ds = _forget(access_id)
    removed = ds.delete() if ds is not None else False
    path = resolve_dataset(access_id)
    if path is not None:
        for suffix in ('', '-wal', '-shm'):
            Path(str(path) + suffix).unlink(missing_ok=True)
        removed = True
    try:
        return unregister_dataset(access_id) or removed
    except sqlite3.Error:
        logger.exception("Registry delete failed for dataset %s", access_id)
        return removed


def info(access_id: str) -> dict:
    """Registry entry for one dataset: path, timestamps, last staged counts."""
    try:
        entry = get_dataset(check_access_id(access_id))
    except (DatasetNotFound, ValueError):
        return _missing(access_id)
    except sqlite3.Error as e:
        return {'success': False, 'error': str(e)}
    return {'success': True, **entry}


def catalog() -> dict:
    """Every registered dataset, newest first."""
    try:
        return {'success': True, 'datasets': list_datasets()}
    except sqlite3.Error as e:
        logger.exception("Registry listing failed")
        return {'success': False, 'error': str(e)}
