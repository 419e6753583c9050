"""Pipeline configuration assembled once at process start.

Precedence: environment variables > JSON config file > defaults. The JSON file
lives at ~/.knowledge-pipeline/config.json (or $PIPELINE_CONFIG) and may hold
any PipelineConfig field name as a key.

Components never read the environment themselves; they receive a
PipelineConfig.
"""
import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger("knowledge-pipeline.config")

DEFAULT_LLM_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_OLLAMA_HOST = "http://127.0.0.1:11434"
LLM_BACKENDS = ("auto", "api", "cli", "ollama")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Raised when a configuration value cannot be parsed."""


@dataclass(frozen=True)
class PipelineConfig:
    vault_path: Path
    home: Path
    dry_run: bool = False
    backfill_days: int = 1
    max_sessions: int = 50
    llm_delay_ms: int = 1000
    llm_timeout_ms: int = 30000
    significance_threshold: float = 0.3
    knowledge_confidence: float = 0.75
    auto_commit: bool = False
    llm_model: str = DEFAULT_LLM_MODEL
    llm_backend: str = "auto"
    chunk_max_chars: int = 8000
    debug: bool = False
    ollama_host: str = DEFAULT_OLLAMA_HOST
    ollama_model: str = "llama3.2"
    queue_max_attempts: int = 3
    queue_backoff_ms: int = 5000
    queue_poll_ms: int = 2000
    queue_run_forever: bool = True
    anthropic_api_key: str = field(default="", repr=False)

    @property
    def state_dir(self) -> Path:
        return self.vault_path / ".pipeline-state"

    @property
    def queue_dir(self) -> Path:
        return self.vault_path / ".hooks-queue"

    @property
    def claude_root(self) -> Path:
        return self.home / ".claude"

    @property
    def desktop_sessions_dir(self) -> Path:
        return (self.home / "Library" / "Application Support" / "Claude"
                / "local-agent-mode-sessions")

    @property
    def llm_timeout_s(self) -> float:
        return self.llm_timeout_ms / 1000.0

    def with_overrides(self, **changes) -> "PipelineConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


# env var -> (field, parser)
_ENV_FIELDS = {
    "PIPELINE_DRY_RUN": ("dry_run", "bool"),
    "PIPELINE_BACKFILL_DAYS": ("backfill_days", "int"),
    "PIPELINE_MAX_SESSIONS": ("max_sessions", "int"),
    "PIPELINE_LLM_DELAY_MS": ("llm_delay_ms", "int"),
    "PIPELINE_LLM_TIMEOUT_MS": ("llm_timeout_ms", "int"),
    "PIPELINE_SIGNIFICANCE_THRESHOLD": ("significance_threshold", "float"),
    "PIPELINE_KNOWLEDGE_CONFIDENCE": ("knowledge_confidence", "float"),
    "PIPELINE_AUTO_COMMIT": ("auto_commit", "bool"),
    "PIPELINE_LLM_MODEL": ("llm_model", "str"),
    "PIPELINE_LLM_BACKEND": ("llm_backend", "str"),
    "PIPELINE_MAX_CHARS": ("chunk_max_chars", "int"),
    "PIPELINE_DEBUG": ("debug", "bool"),
    "OLLAMA_HOST": ("ollama_host", "str"),
    "OLLAMA_MODEL": ("ollama_model", "str"),
    "QUEUE_MAX_ATTEMPTS": ("queue_max_attempts", "int"),
    "QUEUE_BACKOFF_MS": ("queue_backoff_ms", "int"),
    "QUEUE_POLL_MS": ("queue_poll_ms", "int"),
    "QUEUE_RUN_FOREVER": ("queue_run_forever", "bool"),
    "ANTHROPIC_API_KEY": ("anthropic_api_key", "str"),
}


def _parse_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name}: expected a boolean, got {value!r}")


def _parse_value(name: str, kind: str, value):
    if kind == "bool":
        return _parse_bool(name, value)
    try:
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name}: expected {kind}, got {value!r}") from None
    return str(value)


def load_config_file(path: Path) -> dict:
    """Load the optional JSON config file. Missing or unreadable files yield {}."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not an object", path)
        return {}
    return data


def load_config(env: Optional[Mapping[str, str]] = None,
                home: Optional[Path] = None) -> PipelineConfig:
    """Build a PipelineConfig from the environment and optional config file.

    Args:
        env: Environment mapping (defaults to os.environ)
        home: Home directory (defaults to Path.home())

    Raises:
        ConfigError: If a value is present but malformed
    """
    env = os.environ if env is None else env
    home = Path(home) if home is not None else Path.home()

    config_path = Path(env.get("PIPELINE_CONFIG") or home / ".knowledge-pipeline" / "config.json")
    file_values = load_config_file(config_path.expanduser())

    kinds = {field_name: kind for field_name, kind in _ENV_FIELDS.values()}
    known = {f.name for f in fields(PipelineConfig)}
    values: dict = {}

    for key, raw in file_values.items():
        if key not in known or key == "home":
            logger.debug("Ignoring unknown config key %r", key)
            continue
        if key == "vault_path":
            values[key] = Path(str(raw)).expanduser()
        else:
            values[key] = _parse_value(key, kinds.get(key, "str"), raw)

    for env_name, (field_name, kind) in _ENV_FIELDS.items():
        raw = env.get(env_name)
        if raw is None or raw == "":
            continue
        values[field_name] = _parse_value(env_name, kind, raw)

    vault = env.get("OBSIDIAN_VAULT")
    if vault:
        values["vault_path"] = Path(vault).expanduser()
    values.setdefault("vault_path", home / "Obsidian")

    backend = values.get("llm_backend", "auto")
    if backend not in LLM_BACKENDS:
        raise ConfigError(f"PIPELINE_LLM_BACKEND: expected one of {LLM_BACKENDS}, got {backend!r}")

    return PipelineConfig(home=home, **values)
