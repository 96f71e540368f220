"""
stagedb Test Fixtures

In-memory dataset connections and representative GraphQL documents.
File-backed tests redirect the registry into tmp_path.

Run with: pytest tests/ -v
"""
import pytest


# =============================================================================
# DOCUMENTS
# =============================================================================

GENE_DOC = {
    "gene": {
        "id": 12,
        "name": "BRAF",
        "variants": [
            {"id": 1, "name": "V600E"},
            {"id": 2, "name": "V600K"},
        ],
    }
}

CONNECTION_DOC = {
    "data": {
        "evidenceItems": {
            "totalCount": 57,
            "pageInfo": {
                "hasNextPage": True,
                "hasPreviousPage": False,
                "startCursor": "MQ",
                "endCursor": "abc",
            },
            "edges": [
                {"node": {
                    "__typename": "EvidenceItem",
                    "id": 101,
                    "name": "EID101",
                    "status": "ACCEPTED",
                    "significance": {"level": "A", "direction": "SUPPORTS"},
                    "molecularProfile": {"id": 9, "name": "BRAF V600E"},
                    "sources": [
                        {"__typename": "Source", "id": 5, "title": "Paper A", "citationId": "123"},
                        {"__typename": "Source", "id": 6, "title": "Paper B", "citationId": "456"},
                    ],
                }},
                {"node": {
                    "__typename": "EvidenceItem",
                    "id": 102,
                    "name": "EID102",
                    "status": "SUBMITTED",
                    "significance": {"level": "B", "direction": None},
                    "molecularProfile": {"id": 9, "name": "BRAF V600E"},
                    "sources": [
                        {"__typename": "Source", "id": 5, "title": "Paper A", "citationId": "123"},
                    ],
                }},
            ],
        }
    }
}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def db():
    """Fresh in-memory dataset connection."""
    from stagedb.core import open_dataset_db
    conn = open_dataset_db(':memory:')
    yield conn
    conn.close()


@pytest.fixture
def dataset():
    """In-memory Dataset, not registered anywhere."""
    from stagedb.dataset import Dataset
    ds = Dataset('test')
    yield ds
    ds.close()


@pytest.fixture
def tmp_home(tmp_path, monkeypatch):
    """Redirect the registry to tmp dir so tests don't touch real ~/.stagedb/."""
    home = tmp_path / ".stagedb"
    monkeypatch.setattr("stagedb.registry.STAGEDB_HOME", home)
    monkeypatch.setattr("stagedb.registry.REGISTRY_DB", home / "registry.db")
    monkeypatch.setattr("stagedb.registry.DATASETS_DIR", home / "datasets")
    monkeypatch.setattr("stagedb.dataset._open", {})
    return home


@pytest.fixture
def gene_doc():
    import copy
    return copy.deepcopy(GENE_DOC)


@pytest.fixture
def connection_doc():
    import copy
    return copy.deepcopy(CONNECTION_DOC)
