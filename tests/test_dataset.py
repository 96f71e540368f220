"""
Tests for stagedb.dataset — process, query, schema, delete.

Dataset-level tests run against an in-memory database. Boundary tests
(by access id) go through the registry redirected into tmp_path.

Run with: pytest tests/test_dataset.py -v
"""
import threading

import pytest

import stagedb.dataset as dataset_mod
from stagedb.config import ChunkConfig, StagingConfig
from stagedb.core import get_meta
from stagedb.dataset import Dataset, catalog, delete, info, process, query, schema
from stagedb.introspect import list_tables
from stagedb.registry import dataset_path, get_dataset, resolve_dataset
from stagedb.retrieve.chunks import TOKEN_PREFIX, ChunkRule

LONG_TEXT = 'BRAF V600E is an activating mutation. ' * 8


@pytest.fixture
def chunking_dataset():
    config = StagingConfig(chunking=ChunkConfig(
        piece_size=16, rules=[ChunkRule('body', threshold=32)]))
    ds = Dataset('chunky', config=config)
    yield ds
    ds.close()


# =============================================================================
# process
# =============================================================================

@pytest.mark.unit
class TestProcess:

    def test_gene_summary(self, dataset, gene_doc):
        result = dataset.process(gene_doc)
        assert result['success'] is True
        assert result['data_access_id'] == 'test'
        assert result['table_count'] == 3
        assert result['total_rows'] == 5
        assert result['message'] == "Staged 5 rows into 3 tables"

        schemas = result['schemas']
        assert schemas['gene']['row_count'] == 1
        assert schemas['variant']['row_count'] == 2
        assert schemas['gene_variant']['row_count'] == 2
        assert schemas['gene']['columns'] == {'id': 'INTEGER PRIMARY KEY', 'name': 'TEXT'}
        assert schemas['gene']['sample_data'] == [{'id': 12, 'name': 'BRAF'}]
        assert schemas['gene_variant']['_meta']['kind'] == 'junction'
        assert 'pagination' not in result

    def test_junction_rows(self, dataset, gene_doc):
        dataset.process(gene_doc)
        pairs = dataset.db.execute(
            "SELECT gene_id, variant_id FROM gene_variant ORDER BY variant_id").fetchall()
        assert [tuple(p) for p in pairs] == [(12, 1), (12, 2)]

    def test_relationships_reported(self, dataset, gene_doc):
        rels = dataset.process(gene_doc)['schemas']['gene']['relationships']
        assert [(r['type'], r['related']) for r in rels] == [('junction_table', 'variant')]

    def test_flat_object_fallback(self, dataset):
        result = dataset.process({'total': 42})
        assert result['success']
        assert list(result['schemas']) == ['root_object']
        assert result['schemas']['root_object']['_meta']['kind'] == 'fallback'
        assert result['schemas']['root_object']['sample_data'] == [{'id': 1, 'total': 42}]

    def test_pagination_reported(self, dataset, connection_doc):
        result = dataset.process(connection_doc)
        page = result['pagination']
        assert page['hasNextPage'] is True
        assert page['endCursor'] == 'abc'
        assert page['totalCount'] == 57
        assert page['currentCount'] == 2
        assert 'after: \\"abc' in page['suggestion']
        assert result['total_rows'] == 8

    def test_pagination_ignores_envelope_errors(self, dataset):
        doc = {
            'data': {
                'genes': [{'id': 1, 'name': 'BRAF'}],
                'pageInfo': {'hasNextPage': True, 'endCursor': 'c1'},
            },
            'errors': [{'message': 'partial'}, {'message': 'timeout'}],
        }
        page = dataset.process(doc)['pagination']
        assert page['currentCount'] == 1
        assert page['endCursor'] == 'c1'

    def test_meta_block(self, dataset, gene_doc):
        meta = dataset.process(gene_doc)['_meta']
        assert set(meta) == {
            'processing_time_ms', 'schema_inference_method', 'chunking_applied',
            'chunked_fields', 'integrity_warnings',
        }
        assert meta['schema_inference_method'] == 'structural'
        assert meta['chunking_applied'] is False
        assert meta['integrity_warnings'] == []

    def test_dataset_meta_written(self, dataset, gene_doc):
        dataset.process(gene_doc)
        created = get_meta(dataset.db, 'created_at')
        dataset.process({'genes': [{'id': 13, 'name': 'KRAS'}]})
        assert get_meta(dataset.db, 'created_at') == created
        assert get_meta(dataset.db, 'schema_inference_method') == 'structural'
        ops = dataset.db.execute("SELECT operation, success FROM _ops").fetchall()
        assert [tuple(o) for o in ops] == [('process', 1), ('process', 1)]

    def test_repeat_calls_accumulate(self, dataset, gene_doc):
        dataset.process(gene_doc)
        dataset.process({'genes': [{'id': 13, 'name': 'KRAS'}]})
        names = dataset.query("SELECT name FROM gene ORDER BY id")['results']
        assert names == [{'name': 'BRAF'}, {'name': 'KRAS'}]

    def test_failure_rolls_back(self, dataset, gene_doc, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")
        monkeypatch.setattr(dataset_mod, 'insert_rows', explode)

        result = dataset.process(gene_doc)
        assert result['success'] is False
        assert result['message'] == "Failed to process data: boom"
        assert list_tables(dataset.db) == []
        op = dataset.db.execute("SELECT success, message FROM _ops").fetchone()
        assert tuple(op) == (0, 'boom')

    def test_chunked_values(self, chunking_dataset):
        result = chunking_dataset.process({'notes': [{'id': 1, 'title': 'x', 'body': LONG_TEXT}]})
        assert result['_meta']['chunking_applied'] is True
        assert result['_meta']['chunked_fields'] == {'note': ['body']}
        note = result['schemas']['note']
        assert note['_meta']['chunked_fields'] == ['body']
        assert note['sample_data'][0]['body'] == LONG_TEXT

        stored = chunking_dataset.db.execute("SELECT body FROM note").fetchone()[0]
        assert stored.startswith(TOKEN_PREFIX)


# =============================================================================
# query
# =============================================================================

@pytest.mark.unit
class TestQuery:

    def test_select(self, dataset, gene_doc):
        dataset.process(gene_doc)
        result = dataset.query("SELECT id, name FROM variant ORDER BY id")
        assert result['success'] is True
        assert result['results'] == [{'id': 1, 'name': 'V600E'}, {'id': 2, 'name': 'V600K'}]
        assert result['row_count'] == 2
        assert result['column_names'] == ['id', 'name']
        assert result['query_type'] == 'select'
        assert result['chunked_content_resolved'] is False
        assert 'execution_time_ms' in result

    def test_join_through_junction(self, dataset, connection_doc):
        dataset.process(connection_doc)
        result = dataset.query(
            "SELECT e.name, s.title FROM evidence_item e "
            "JOIN evidence_item_source es ON es.evidence_item_id = e.id "
            "JOIN source s ON s.id = es.source_id "
            "ORDER BY e.id, s.id")
        assert [tuple(r.values()) for r in result['results']] == [
            ('EID101', 'Paper A'), ('EID101', 'Paper B'), ('EID102', 'Paper A'),
        ]

    def test_delete_rejected(self, dataset, gene_doc):
        dataset.process(gene_doc)
        result = dataset.query("DELETE FROM gene")
        assert result['success'] is False
        assert result['query'] == "DELETE FROM gene"
        assert dataset.db.execute("SELECT COUNT(*) FROM gene").fetchone()[0] == 1

    def test_stacked_statements_rejected(self, dataset, gene_doc):
        dataset.process(gene_doc)
        result = dataset.query("SELECT 1; DROP TABLE foo;")
        assert result['success'] is False
        assert 'gene' in list_tables(dataset.db)

    def test_settings_pragma_not_authorized(self, dataset):
        result = dataset.query("PRAGMA foreign_keys=OFF")
        assert result['success'] is False
        assert result['error'].startswith("Query not authorized")

    def test_temp_table_workflow(self, dataset, gene_doc):
        dataset.process(gene_doc)
        created = dataset.query("CREATE TEMP TABLE picked AS SELECT * FROM variant WHERE id = 2")
        assert created['success'] is True
        assert created['query_type'] == 'create_temp'
        assert created['results'] == []

        picked = dataset.query("SELECT name FROM picked")
        assert picked['results'] == [{'name': 'V600K'}]
        assert 'picked' not in list_tables(dataset.db)

    def test_sql_error_reported(self, dataset):
        result = dataset.query("SELECT * FROM no_such_table")
        assert result['success'] is False
        assert 'no such table' in result['error']

    def test_chunks_resolved(self, chunking_dataset):
        chunking_dataset.process({'notes': [{'id': 1, 'title': 'x', 'body': LONG_TEXT}]})
        result = chunking_dataset.query("SELECT body FROM note")
        assert result['results'] == [{'body': LONG_TEXT}]
        assert result['chunked_content_resolved'] is True

    def test_concurrent_queries(self, dataset, gene_doc):
        dataset.process(gene_doc)
        results = []

        def worker():
            results.append(dataset.query("SELECT COUNT(*) AS n FROM variant"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert [r['results'] for r in results] == [[{'n': 2}]] * 8


# =============================================================================
# schema / lifecycle
# =============================================================================

@pytest.mark.unit
class TestSchema:

    def test_tables_described(self, dataset, gene_doc):
        dataset.process(gene_doc)
        tables = dataset.schema()['tables']
        assert sorted(tables) == ['gene', 'gene_variant', 'variant']
        assert {'column': 'gene_id', 'references': 'gene', 'to': 'id'} \
            in tables['gene_variant']['foreign_keys']
        assert tables['variant']['row_count'] == 2

    def test_empty_dataset(self, dataset):
        assert dataset.schema() == {'success': True, 'tables': {}}


@pytest.mark.unit
class TestClosed:

    def test_operations_after_close(self, dataset, gene_doc):
        dataset.close()
        assert dataset.process(gene_doc)['not_found'] is True
        assert dataset.query("SELECT 1")['not_found'] is True
        assert dataset.schema()['not_found'] is True
        assert dataset.delete() is False


# =============================================================================
# Boundary helpers (by access id)
# =============================================================================

@pytest.mark.integration
class TestByAccessId:

    def test_process_assigns_id(self, tmp_home, gene_doc):
        result = process(gene_doc)
        access_id = result['data_access_id']
        assert result['success']
        assert len(access_id) == 32
        assert dataset_path(access_id).exists()
        assert get_dataset(access_id)['total_rows'] == 5

        rows = query(access_id, "SELECT name FROM gene")['results']
        assert rows == [{'name': 'BRAF'}]

    def test_reopen_from_disk(self, tmp_home, gene_doc):
        process(gene_doc, access_id='civic')
        dataset_mod._forget('civic').close()
        assert query('civic', "SELECT COUNT(*) AS n FROM variant")['results'] == [{'n': 2}]
        assert sorted(schema('civic')['tables']) == ['gene', 'gene_variant', 'variant']

    def test_same_id_accumulates(self, tmp_home, gene_doc):
        process(gene_doc, access_id='civic')
        result = process({'drugs': [{'id': 3, 'name': 'Vemurafenib'}]}, access_id='civic')
        assert result['success']
        assert get_dataset('civic')['table_count'] == 1
        assert sorted(schema('civic')['tables']) == ['drug', 'gene', 'gene_variant', 'variant']

    def test_unknown_id(self, tmp_home):
        assert query('missing', "SELECT 1")['not_found'] is True
        assert schema('missing')['not_found'] is True
        assert query('../escape', "SELECT 1")['not_found'] is True

    def test_invalid_id_on_process(self, tmp_home, gene_doc):
        result = process(gene_doc, access_id='not valid')
        assert result['success'] is False

    def test_failed_first_process_leaves_nothing(self, tmp_home, gene_doc, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")
        monkeypatch.setattr(dataset_mod, 'insert_rows', explode)

        result = process(gene_doc, access_id='fresh')
        assert result['success'] is False
        assert resolve_dataset('fresh') is None
        assert not dataset_path('fresh').exists()
        assert 'fresh' not in dataset_mod._open

    def test_delete(self, tmp_home, gene_doc):
        process(gene_doc, access_id='civic')
        path = dataset_path('civic')
        assert delete('civic') is True
        assert not path.exists()
        assert resolve_dataset('civic') is None
        assert query('civic', "SELECT 1")['not_found'] is True
        assert delete('civic') is False

    def test_delete_invalid_id(self, tmp_home):
        assert delete('../escape') is False

    def test_info_and_catalog(self, tmp_home, gene_doc):
        process(gene_doc, access_id='civic')
        process({'drugs': [{'id': 3, 'name': 'Vemurafenib'}]}, access_id='other')

        entry = info('civic')
        assert entry['success'] is True
        assert entry['access_id'] == 'civic'
        assert entry['table_count'] == 3
        assert entry['total_rows'] == 5

        listed = catalog()
        assert listed['success'] is True
        assert {d['access_id'] for d in listed['datasets']} == {'civic', 'other'}

    def test_info_unknown(self, tmp_home):
        assert info('missing')['not_found'] is True
        assert info('../escape')['not_found'] is True
        assert catalog() == {'success': True, 'datasets': []}
