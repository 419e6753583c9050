"""Pytest fixtures for knowledge pipeline tests."""
import json
from pathlib import Path
from typing import Callable

import pytest

from knowledge_pipeline.config import PipelineConfig
from tests.helpers import ms


@pytest.fixture
def home(tmp_path) -> Path:
    """A fake home directory with an empty ~/.claude."""
    path = tmp_path / "home"
    (path / ".claude" / "projects").mkdir(parents=True)
    return path


@pytest.fixture
def vault(home) -> Path:
    """An empty vault under the fake home."""
    path = home / "Obsidian"
    path.mkdir()
    return path


@pytest.fixture
def make_config(vault, home) -> Callable[..., PipelineConfig]:
    """Build a PipelineConfig pointing at the temp vault, with no throttling."""
    def factory(**overrides) -> PipelineConfig:
        values = {
            "vault_path": vault,
            "home": home,
            "llm_delay_ms": 0,
            "queue_poll_ms": 0,
            "queue_backoff_ms": 0,
        }
        values.update(overrides)
        return PipelineConfig(**values)
    return factory


@pytest.fixture
def write_transcript(home) -> Callable[..., Path]:
    """Write a Claude Code transcript under ~/.claude/projects/<encoded cwd>/."""
    def factory(session_id: str, messages, cwd: str = None, start: str = "2026-03-02 10:00",
                model: str = "claude-sonnet-4") -> Path:
        cwd = cwd or str(home / "work" / "api")
        directory = home / ".claude" / "projects" / cwd.replace("/", "-")
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{session_id}.jsonl"
        base = ms(start)
        lines = []
        for i, (role, content) in enumerate(messages):
            message = {"role": role, "content": content}
            if role == "assistant":
                message["model"] = model
            lines.append(json.dumps({
                "type": role,
                "cwd": cwd,
                "timestamp": base + i * 60_000,
                "message": message,
            }))
        path.write_text("\n".join(lines) + "\n")
        return path
    return factory


@pytest.fixture
def write_history(home) -> Callable[..., Path]:
    """Append entries to ~/.claude/history.jsonl."""
    def factory(entries) -> Path:
        path = home / ".claude" / "history.jsonl"
        with open(path, "a") as f:
            for entry in entries:
                f.write(json.dumps(entry) + "\n")
        return path
    return factory


@pytest.fixture
def code_session(home, write_transcript, write_history):
    """Create one discoverable Claude Code session and return its id."""
    def factory(session_id: str, title: str, start: str = "2026-03-02 10:00",
                messages=None, project: str = None) -> str:
        project = project or str(home / "work" / "api")
        write_transcript(session_id, messages or [
            ("user", title),
            ("assistant", "Looking at the queue implementation now."),
            ("user", "Use atomic rename for claims please"),
            ("assistant", "Done, claims now use os.rename."),
        ], cwd=project, start=start)
        write_history([{"sessionId": session_id, "display": title,
                        "timestamp": ms(start), "project": project}])
        return session_id
    return factory
