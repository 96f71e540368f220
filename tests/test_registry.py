"""Tests for stagedb.registry — access id catalog."""

import pytest

from stagedb import registry
from stagedb.registry import (
    DatasetNotFound, check_access_id, dataset_path, get_dataset, list_datasets,
    new_access_id, register_dataset, resolve_dataset, unregister_dataset,
)

pytestmark = [pytest.mark.unit]


def _make_dataset(access_id):
    path = dataset_path(access_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    return path


class TestRegisterAndResolve:

    def test_round_trip(self, tmp_home):
        path = _make_dataset('abc')
        register_dataset('abc', path, table_count=2, total_rows=5)
        assert resolve_dataset('abc') == path.resolve()

    def test_dataset_path_under_home(self, tmp_home):
        assert dataset_path('abc') == tmp_home / 'datasets' / 'abc.db'
        assert registry.REGISTRY_DB == tmp_home / 'registry.db'

    def test_unknown_id(self, tmp_home):
        assert resolve_dataset('nope') is None

    def test_file_removed(self, tmp_home):
        path = _make_dataset('abc')
        register_dataset('abc', path)
        path.unlink()
        assert resolve_dataset('abc') is None

    def test_upsert_refreshes_stats(self, tmp_home):
        path = _make_dataset('abc')
        register_dataset('abc', path, table_count=1, total_rows=1)
        first = get_dataset('abc')
        register_dataset('abc', path, table_count=3, total_rows=9)
        second = get_dataset('abc')
        assert (second['table_count'], second['total_rows']) == (3, 9)
        assert second['created_at'] == first['created_at']
        assert len(list_datasets()) == 1


class TestUnregister:

    def test_unregister(self, tmp_home):
        path = _make_dataset('abc')
        register_dataset('abc', path)
        assert unregister_dataset('abc') is True
        assert resolve_dataset('abc') is None
        assert unregister_dataset('abc') is False

    def test_get_missing_raises(self, tmp_home):
        with pytest.raises(DatasetNotFound):
            get_dataset('missing')

    def test_not_found_is_lookup_error(self):
        assert issubclass(DatasetNotFound, LookupError)


class TestList:

    def test_lists_all(self, tmp_home):
        for name in ('a1', 'b2'):
            register_dataset(name, _make_dataset(name))
        assert {d['access_id'] for d in list_datasets()} == {'a1', 'b2'}

    def test_empty(self, tmp_home):
        assert list_datasets() == []


class TestAccessIds:

    def test_new_ids_are_valid_and_unique(self):
        ids = {new_access_id() for _ in range(10)}
        assert len(ids) == 10
        for access_id in ids:
            assert check_access_id(access_id) == access_id

    @pytest.mark.parametrize("bad", [
        '', '../etc/passwd', 'a/b', 'a b', 'x' * 129, None, 42,
    ])
    def test_invalid(self, bad):
        with pytest.raises(ValueError):
            check_access_id(bad)

    def test_invalid_path_rejected(self):
        with pytest.raises(ValueError):
            dataset_path('../escape')
