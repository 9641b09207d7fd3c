"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from hybrid_memory.config import (
    MemoryConfig,
    StorageConfig,
    SummaryConfig,
    load_config,
    read_yaml,
)
from hybrid_memory.exceptions import ConfigError

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config.example.yaml"


class TestDefaults:
    def test_default_tree(self):
        config = MemoryConfig()
        assert config.window.token_budget == 1500
        assert config.summary.level_thresholds == [500, 350, 250]
        assert config.context.total_limit == 3000
        assert config.retry.attempts == 3
        assert config.importance.strategy == "heuristic"

    def test_thresholds_must_match_levels(self):
        with pytest.raises(ValidationError):
            SummaryConfig(levels=2, level_thresholds=[500, 350, 250])

    def test_thresholds_must_be_positive(self):
        with pytest.raises(ValidationError):
            SummaryConfig(levels=2, level_thresholds=[500, 0])

    def test_parent_path_rejected(self):
        with pytest.raises(ValidationError):
            StorageConfig(sqlite_db_path="../outside/memory.db")


class TestLoadConfig:
    def test_example_config_loads(self):
        config = load_config(EXAMPLE_CONFIG)
        assert config.embedding.model == "all-MiniLM-L6-v2"
        assert config.profile.extraction_interval == 10

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HYBRID_MEMORY_TEST_KEY", "sk-test")
        path = tmp_path / "config.yaml"
        path.write_text(
            "llm:\n  api_key: ${HYBRID_MEMORY_TEST_KEY}\n  model: gpt-4o\n"
            "window:\n  token_budget: 800\n",
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.llm.api_key == "sk-test"
        assert config.llm.model == "gpt-4o"
        assert config.window.token_budget == 800
        # Unspecified sections keep their defaults
        assert config.context.total_limit == 3000

    def test_unset_variable_left_untouched(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HYBRID_MEMORY_UNSET", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("llm:\n  api_key: ${HYBRID_MEMORY_UNSET}\n", encoding="utf-8")
        assert read_yaml(path)["llm"]["api_key"] == "${HYBRID_MEMORY_UNSET}"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == MemoryConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path / "nope.yaml")
        assert exc_info.value.path.endswith("nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("llm: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("window:\n  token_budget: -5\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="token_budget"):
            load_config(path)
