"""Tests for config.py: environment and file precedence, validation."""
import json
from pathlib import Path

import pytest

from knowledge_pipeline.config import ConfigError, PipelineConfig, load_config, load_config_file


class TestLoadConfig:
    """Tests for load_config()."""

    def test_defaults(self, tmp_path):
        """No env and no file gives the documented defaults."""
        config = load_config(env={}, home=tmp_path)
        assert config.vault_path == tmp_path / "Obsidian"
        assert config.backfill_days == 1
        assert config.max_sessions == 50
        assert config.llm_delay_ms == 1000
        assert config.llm_timeout_ms == 30000
        assert config.significance_threshold == 0.3
        assert config.knowledge_confidence == 0.75
        assert config.dry_run is False
        assert config.auto_commit is False

    def test_env_values_parsed(self, tmp_path):
        """Environment variables are parsed to their field types."""
        env = {
            "OBSIDIAN_VAULT": str(tmp_path / "vault"),
            "PIPELINE_DRY_RUN": "true",
            "PIPELINE_BACKFILL_DAYS": "7",
            "PIPELINE_SIGNIFICANCE_THRESHOLD": "0.5",
            "PIPELINE_AUTO_COMMIT": "1",
        }
        config = load_config(env=env, home=tmp_path)
        assert config.vault_path == tmp_path / "vault"
        assert config.dry_run is True
        assert config.backfill_days == 7
        assert config.significance_threshold == 0.5
        assert config.auto_commit is True

    def test_env_overrides_file(self, tmp_path):
        """Environment beats the JSON config file."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"max_sessions": 5, "llm_delay_ms": 10}))
        env = {"PIPELINE_CONFIG": str(config_file), "PIPELINE_MAX_SESSIONS": "9"}
        config = load_config(env=env, home=tmp_path)
        assert config.max_sessions == 9
        assert config.llm_delay_ms == 10

    def test_default_file_location(self, tmp_path):
        """~/.knowledge-pipeline/config.json is read when PIPELINE_CONFIG is unset."""
        config_dir = tmp_path / ".knowledge-pipeline"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({"vault_path": str(tmp_path / "v")}))
        config = load_config(env={}, home=tmp_path)
        assert config.vault_path == tmp_path / "v"

    def test_malformed_int_raises(self, tmp_path):
        """A present but malformed value is a ConfigError."""
        with pytest.raises(ConfigError):
            load_config(env={"PIPELINE_MAX_SESSIONS": "lots"}, home=tmp_path)

    def test_malformed_bool_raises(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(env={"PIPELINE_DRY_RUN": "maybe"}, home=tmp_path)

    def test_unknown_backend_raises(self, tmp_path):
        """Only known LLM backends are accepted."""
        with pytest.raises(ConfigError):
            load_config(env={"PIPELINE_LLM_BACKEND": "carrier-pigeon"}, home=tmp_path)

    def test_empty_env_value_ignored(self, tmp_path):
        """Empty strings fall through to the default."""
        config = load_config(env={"PIPELINE_MAX_SESSIONS": ""}, home=tmp_path)
        assert config.max_sessions == 50

    def test_api_key_hidden_from_repr(self, tmp_path):
        """The API key is loaded but never shown in repr."""
        config = load_config(env={"ANTHROPIC_API_KEY": "sk-ant-secret"}, home=tmp_path)
        assert config.anthropic_api_key == "sk-ant-secret"
        assert "sk-ant-secret" not in repr(config)


class TestLoadConfigFile:
    """Tests for load_config_file()."""

    def test_missing_file(self, tmp_path):
        assert load_config_file(tmp_path / "nope.json") == {}

    def test_corrupt_file_ignored(self, tmp_path):
        """Unparseable JSON yields an empty mapping."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config_file(path) == {}

    def test_non_object_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]")
        assert load_config_file(path) == {}


class TestPipelineConfig:
    """Tests for derived paths and overrides."""

    def test_derived_paths(self, tmp_path):
        """State and queue directories live inside the vault."""
        config = PipelineConfig(vault_path=tmp_path / "v", home=tmp_path)
        assert config.state_dir == tmp_path / "v" / ".pipeline-state"
        assert config.queue_dir == tmp_path / "v" / ".hooks-queue"
        assert config.claude_root == tmp_path / ".claude"
        assert config.llm_timeout_s == 30.0

    def test_with_overrides_returns_copy(self, tmp_path):
        """with_overrides leaves the original untouched."""
        config = PipelineConfig(vault_path=Path(tmp_path), home=tmp_path)
        changed = config.with_overrides(dry_run=True)
        assert changed.dry_run is True
        assert config.dry_run is False
