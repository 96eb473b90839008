"""Tests for config/models.py module.

Covers:
- LogOutputConfig model
- EmbeddingConfig model
- SchedulerConfig model
- SearchConfig model
- GraphConfig model
- VaultRankConfig root model
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from vaultrank.config.models import (
    EmbeddingConfig,
    GraphConfig,
    IndexerConfig,
    LoggingConfig,
    LogOutputConfig,
    SchedulerConfig,
    SearchConfig,
    VaultRankConfig,
)


class TestLogOutputConfig:
    """Tests for LogOutputConfig model."""

    def test_defaults(self) -> None:
        config = LogOutputConfig()
        assert config.format == "console"
        assert config.destination == "stderr"
        assert config.level is None

    def test_absolute_path_destination(self) -> None:
        config = LogOutputConfig(destination="/var/log/vaultrank.log")
        assert config.destination == "/var/log/vaultrank.log"

    def test_relative_path_fails(self) -> None:
        """Relative path is rejected."""
        with pytest.raises(ValidationError):
            LogOutputConfig(destination="logs/vaultrank.log")

    def test_invalid_level_fails(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(level="TRACE")  # type: ignore[arg-type]


class TestEmbeddingConfig:
    def test_defaults(self) -> None:
        config = EmbeddingConfig()
        assert config.provider == "local"
        assert config.model == "BAAI/bge-small-en-v1.5"
        assert config.dimension is None
        assert config.quantized
        assert config.retries == 10

    def test_unknown_provider_fails(self) -> None:
        with pytest.raises(ValidationError):
            EmbeddingConfig(provider="cloud")  # type: ignore[arg-type]

    def test_negative_retries_fail(self) -> None:
        with pytest.raises(ValidationError):
            EmbeddingConfig(retries=-1)


class TestSchedulerConfig:
    def test_defaults(self) -> None:
        config = SchedulerConfig()
        assert config.max_concurrency == 1
        assert config.queue_max_size == 256
        assert config.high_priority_ceiling == 32

    @pytest.mark.parametrize("field", ["max_concurrency", "queue_max_size"])
    def test_zero_fails(self, field: str) -> None:
        with pytest.raises(ValidationError):
            SchedulerConfig(**{field: 0})


class TestSearchConfig:
    def test_defaults(self) -> None:
        config = SearchConfig()
        assert config.min_similarity == 0.5
        assert (config.similarity_weight, config.centrality_weight, config.activation_weight) == (
            0.6,
            0.2,
            0.2,
        )

    def test_negative_weight_fails(self) -> None:
        with pytest.raises(ValidationError):
            SearchConfig(centrality_weight=-0.1)


class TestGraphConfig:
    def test_frontmatter_outweighs_body_by_default(self) -> None:
        config = GraphConfig()
        assert config.frontmatter_edge_weight > config.body_edge_weight

    @pytest.mark.parametrize("damping", [0.0, 1.0])
    def test_damping_bounds(self, damping: float) -> None:
        with pytest.raises(ValidationError):
            GraphConfig(damping=damping)


class TestVaultRankConfig:
    def test_all_sections_present(self) -> None:
        config = VaultRankConfig()
        assert isinstance(config.embedding, EmbeddingConfig)
        assert isinstance(config.indexer, IndexerConfig)
        assert config.indexer.excluded_folders == []
        assert config.index.index_path is None

    def test_nested_dict_input(self) -> None:
        config = VaultRankConfig.model_validate({"search": {"result_limit": 5}})
        assert config.search.result_limit == 5
        assert config.search.min_similarity == 0.5
