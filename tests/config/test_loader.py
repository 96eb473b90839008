"""Tests for config/loader.py module.

Covers:
- _load_yaml() function
- _deep_merge() function
- load_config() precedence
- get_index_dir() function
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from vaultrank.config.loader import (
    GLOBAL_CONFIG_PATH,
    _deep_merge,
    _load_yaml,
    get_index_dir,
    load_config,
)
from vaultrank.config.models import SearchConfig
from vaultrank.core.errors import ConfigError, ErrorCode


@pytest.fixture
def no_global_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("vaultrank.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "none.yaml")


def write_vault_config(vault: Path, text: str) -> None:
    data_dir = vault / ".vaultrank"
    data_dir.mkdir(exist_ok=True)
    (data_dir / "config.yaml").write_text(text)


class TestLoadYaml:
    """Tests for _load_yaml function."""

    def test_returns_empty_dict_for_missing_file(self, tmp_path: Path) -> None:
        """Returns empty dict when file doesn't exist."""
        assert _load_yaml(tmp_path / "nonexistent.yaml") == {}

    def test_loads_valid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("search:\n  min_similarity: 0.4\n")

        assert _load_yaml(yaml_file) == {"search": {"min_similarity": 0.4}}

    def test_returns_empty_for_empty_file(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "empty.yaml"
        yaml_file.write_text("")

        assert _load_yaml(yaml_file) == {}

    def test_raises_config_error_for_invalid_yaml(self, tmp_path: Path) -> None:
        """Raises ConfigError for invalid YAML syntax."""
        yaml_file = tmp_path / "invalid.yaml"
        yaml_file.write_text("search:\n  weights:\n    - invalid: [unclosed")

        with pytest.raises(ConfigError) as exc_info:
            _load_yaml(yaml_file)
        assert exc_info.value.code is ErrorCode.CONFIG_PARSE_ERROR

    def test_raises_config_error_for_non_mapping(self, tmp_path: Path) -> None:
        """A top-level list is not a config."""
        yaml_file = tmp_path / "list.yaml"
        yaml_file.write_text("- a\n- b\n")

        with pytest.raises(ConfigError):
            _load_yaml(yaml_file)


class TestDeepMerge:
    """Tests for _deep_merge function."""

    def test_override_wins(self) -> None:
        assert _deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_nested_merge(self) -> None:
        """Nested dicts are merged recursively."""
        base = {"search": {"min_similarity": 0.5, "result_limit": 25}}
        override = {"search": {"min_similarity": 0.3}}
        result = _deep_merge(base, override)
        assert result == {"search": {"min_similarity": 0.3, "result_limit": 25}}

    def test_override_replaces_non_dict(self) -> None:
        base: dict[str, Any] = {"a": {"nested": 1}}
        override: dict[str, Any] = {"a": "simple"}
        assert _deep_merge(base, override) == {"a": "simple"}

    def test_does_not_mutate_base(self) -> None:
        base = {"a": 1}
        _deep_merge(base, {"b": 2})
        assert base == {"a": 1}


@pytest.mark.usefixtures("no_global_config")
class TestLoadConfig:
    """Tests for load_config precedence."""

    def test_returns_defaults_when_no_files(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)

        assert config.embedding.provider == "local"
        assert config.search.min_similarity == 0.5
        assert config.scheduler.max_concurrency == 1

    def test_loads_vault_config(self, tmp_path: Path) -> None:
        """Loads config from the vault's .vaultrank directory."""
        write_vault_config(tmp_path, "search:\n  min_similarity: 0.35\n")

        config = load_config(tmp_path)

        assert config.search.min_similarity == 0.35

    def test_vault_config_overrides_global(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        global_file = tmp_path / "global.yaml"
        global_file.write_text("search:\n  result_limit: 5\n  min_similarity: 0.2\n")
        monkeypatch.setattr("vaultrank.config.loader.GLOBAL_CONFIG_PATH", global_file)
        vault = tmp_path / "vault"
        vault.mkdir()
        write_vault_config(vault, "search:\n  min_similarity: 0.7\n")

        config = load_config(vault)

        assert config.search.result_limit == 5
        assert config.search.min_similarity == 0.7

    def test_env_vars_override_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        write_vault_config(tmp_path, "embedding:\n  provider: local\n")
        monkeypatch.setenv("VAULTRANK__EMBEDDING__PROVIDER", "remote")
        monkeypatch.setenv("VAULTRANK__EMBEDDING__MODEL", "gemini-embedding-001")

        config = load_config(tmp_path)

        assert config.embedding.provider == "remote"
        assert config.embedding.model == "gemini-embedding-001"

    def test_kwargs_override_all(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Keyword arguments override everything."""
        monkeypatch.setenv("VAULTRANK__SEARCH__RESULT_LIMIT", "7")

        config = load_config(tmp_path, search=SearchConfig(result_limit=3))

        assert config.search.result_limit == 3

    def test_raises_config_error_for_invalid_value(self, tmp_path: Path) -> None:
        """Validation failures surface as ConfigError naming the field."""
        write_vault_config(tmp_path, "scheduler:\n  queue_max_size: 0\n")

        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)

        assert exc_info.value.code is ErrorCode.CONFIG_INVALID_VALUE
        assert exc_info.value.details["field"] == "scheduler.queue_max_size"


@pytest.mark.usefixtures("no_global_config")
class TestGetIndexDir:
    """Tests for get_index_dir function."""

    def test_default_is_inside_vault(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)
        assert get_index_dir(tmp_path, config) == tmp_path / ".vaultrank" / "index"

    def test_respects_custom_index_path(self, tmp_path: Path) -> None:
        custom = tmp_path / "elsewhere" / "index"
        write_vault_config(tmp_path, f"index:\n  index_path: {custom}\n")

        config = load_config(tmp_path)

        assert get_index_dir(tmp_path, config) == custom


class TestGlobalConfigPath:
    def test_is_in_user_config(self) -> None:
        assert isinstance(GLOBAL_CONFIG_PATH, Path)
        assert "vaultrank" in str(GLOBAL_CONFIG_PATH)
