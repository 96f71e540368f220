"""
stagedb configuration — staging defaults with environment overrides.

Process-wide settings live here. Per-dataset facts (created_at, last
processed, inference method) live in the dataset's own _meta table.

Environment:
    STAGEDB_HOME              root for registry.db and datasets/ (registry.py)
    STAGEDB_CHUNKING          '0' disables the chunked field store
    STAGEDB_PIECE_SIZE        bytes per stored chunk piece
    STAGEDB_MAX_VALUE_BYTES   default threshold for columns without a rule
    STAGEDB_SAMPLE_ROWS       rows of sample_data per table in summaries
"""

import os
from dataclasses import dataclass, field

from stagedb.retrieve.chunks import DEFAULT_RULES, ChunkRule


@dataclass
class ChunkConfig:
    """Chunked field store settings."""
    enabled: bool = True
    piece_size: int = 4096
    max_value_bytes: int = 1_000_000  # threshold for columns no rule mentions
    rules: list[ChunkRule] = field(default_factory=lambda: list(DEFAULT_RULES))


@dataclass
class StagingConfig:
    """Knobs for one process() call."""
    # Fields naming an object's type outright; first match wins
    discriminator_fields: tuple[str, ...] = ('__typename',)
    # Unwrap {"data": ..., "errors": ...} GraphQL envelopes before staging
    unwrap_envelope: bool = True
    sample_rows: int = 3
    chunking: ChunkConfig = field(default_factory=ChunkConfig)

    @classmethod
    def from_env(cls) -> 'StagingConfig':
        """Defaults, overridden by STAGEDB_* environment variables."""
        chunking = ChunkConfig(
            enabled=os.environ.get('STAGEDB_CHUNKING', '1') not in ('0', 'false', 'no'),
            piece_size=_env_int('STAGEDB_PIECE_SIZE', 4096),
            max_value_bytes=_env_int('STAGEDB_MAX_VALUE_BYTES', 1_000_000),
        )
        return cls(
            sample_rows=_env_int('STAGEDB_SAMPLE_ROWS', 3),
            chunking=chunking,
        )


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value
