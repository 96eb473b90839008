"""Config module exports."""

from vaultrank.config.loader import VaultRankSettings, get_index_dir, load_config
from vaultrank.config.models import (
    EmbeddingConfig,
    GraphConfig,
    IndexConfig,
    IndexerConfig,
    LoggingConfig,
    SchedulerConfig,
    SearchConfig,
    VaultRankConfig,
)

__all__ = [
    "load_config",
    "get_index_dir",
    "VaultRankConfig",
    "VaultRankSettings",
    "EmbeddingConfig",
    "GraphConfig",
    "IndexConfig",
    "IndexerConfig",
    "LoggingConfig",
    "SchedulerConfig",
    "SearchConfig",
]
