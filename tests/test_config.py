"""Tests for stagedb.config — defaults and STAGEDB_* overrides."""

import pytest

from stagedb.config import ChunkConfig, StagingConfig
from stagedb.retrieve.chunks import DEFAULT_RULES

pytestmark = [pytest.mark.unit]

_ENV = ('STAGEDB_CHUNKING', 'STAGEDB_PIECE_SIZE', 'STAGEDB_MAX_VALUE_BYTES', 'STAGEDB_SAMPLE_ROWS')


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestDefaults:

    def test_staging_defaults(self):
        config = StagingConfig()
        assert config.discriminator_fields == ('__typename',)
        assert config.unwrap_envelope is True
        assert config.sample_rows == 3
        assert config.chunking.enabled is True

    def test_rules_not_shared(self):
        a, b = ChunkConfig(), ChunkConfig()
        a.rules.clear()
        assert list(b.rules) == list(DEFAULT_RULES)


class TestFromEnv:

    def test_no_overrides(self, clean_env):
        config = StagingConfig.from_env()
        assert config.chunking.piece_size == 4096
        assert config.chunking.max_value_bytes == 1_000_000
        assert config.sample_rows == 3

    def test_overrides(self, clean_env):
        clean_env.setenv('STAGEDB_PIECE_SIZE', '128')
        clean_env.setenv('STAGEDB_MAX_VALUE_BYTES', '2048')
        clean_env.setenv('STAGEDB_SAMPLE_ROWS', '5')
        config = StagingConfig.from_env()
        assert config.chunking.piece_size == 128
        assert config.chunking.max_value_bytes == 2048
        assert config.sample_rows == 5

    @pytest.mark.parametrize("value,enabled", [
        ('0', False), ('false', False), ('no', False), ('1', True), ('yes', True),
    ])
    def test_chunking_switch(self, clean_env, value, enabled):
        clean_env.setenv('STAGEDB_CHUNKING', value)
        assert StagingConfig.from_env().chunking.enabled is enabled

    @pytest.mark.parametrize("value", ['abc', '0', '-5'])
    def test_invalid_int(self, clean_env, value):
        clean_env.setenv('STAGEDB_PIECE_SIZE', value)
        with pytest.raises(ValueError, match='STAGEDB_PIECE_SIZE'):
            StagingConfig.from_env()
