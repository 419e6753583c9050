"""Tests for capture.py session-end hook."""
import io
import json
import os
import time

import pytest

from knowledge_pipeline.capture import build_payload, main, read_hook_input
from knowledge_pipeline.jobqueue import STATUS_PENDING, queue_counts
from knowledge_pipeline.llm import RECURSION_GUARD_ENV


@pytest.fixture
def hook_env(monkeypatch, vault, home):
    """Point load_config() at the temp vault and home."""
    monkeypatch.setenv("OBSIDIAN_VAULT", str(vault))
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("PIPELINE_CONFIG", str(home / "no-config.json"))
    monkeypatch.delenv(RECURSION_GUARD_ENV, raising=False)
    return vault


def pending_jobs(vault):
    return [json.loads(p.read_text())
            for p in sorted((vault / ".hooks-queue" / STATUS_PENDING).glob("*.json"))]


class TestReadHookInput:
    """Tests for read_hook_input()."""

    def test_json_object(self):
        assert read_hook_input(io.StringIO('{"session_id": "s1"}')) == {"session_id": "s1"}

    def test_empty(self):
        assert read_hook_input(io.StringIO("")) is None

    def test_invalid_json(self):
        assert read_hook_input(io.StringIO("not json")) is None

    def test_non_object(self):
        assert read_hook_input(io.StringIO("[1]")) is None

    def test_pipe_with_no_writer_times_out(self):
        """An open pipe with nothing written returns None after the timeout."""
        read_fd, write_fd = os.pipe()
        try:
            with os.fdopen(read_fd) as stream:
                assert read_hook_input(stream, timeout_s=0.01) is None
        finally:
            os.close(write_fd)

    def test_pipe_with_data(self):
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b'{"session_id": "p1"}')
        os.close(write_fd)
        with os.fdopen(read_fd) as stream:
            assert read_hook_input(stream, timeout_s=1) == {"session_id": "p1"}

    def test_writer_that_never_closes_is_bounded(self):
        """Data followed by an open pipe returns what arrived once the timeout passes."""
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b'{"session_id": "p2"}')
        try:
            with os.fdopen(read_fd) as stream:
                started = time.monotonic()
                assert read_hook_input(stream, timeout_s=0.2) == {"session_id": "p2"}
                assert time.monotonic() - started < 1.5
        finally:
            os.close(write_fd)

    def test_regular_file(self, tmp_path):
        """Stdin redirected from a file is read to EOF."""
        path = tmp_path / "input.json"
        path.write_text('{"session_id": "f1"}')
        with open(path) as stream:
            assert read_hook_input(stream, timeout_s=0.2) == {"session_id": "f1"}


class TestBuildPayload:
    """Tests for build_payload()."""

    def test_title_from_first_user_message(self, write_transcript):
        path = write_transcript("s1", [("user", "Add retry\n  backoff"), ("assistant", "ok")])
        payload = build_payload({"session_id": "s1", "transcript_path": str(path),
                                 "hook_event_name": "SessionEnd", "cwd": "/w"})
        assert payload == {
            "session_id": "s1",
            "transcript_path": str(path),
            "hook_event_name": "SessionEnd",
            "source": "claude-code",
            "title": "Add retry backoff",
            "cwd": "/w",
        }

    def test_missing_transcript(self):
        assert build_payload({"session_id": "s1"})["title"] == ""


class TestMain:
    """Tests for main()."""

    def test_enqueues_job(self, hook_env, write_transcript):
        path = write_transcript("s1", [("user", "Fix the flaky test"), ("assistant", "ok")])
        stdin = io.StringIO(json.dumps({"session_id": "s1", "transcript_path": str(path)}))
        assert main(stdin) == 0
        jobs = pending_jobs(hook_env)
        assert len(jobs) == 1
        assert jobs[0]["payload"]["title"] == "Fix the flaky test"
        assert jobs[0]["retry_policy"]["max_attempts"] == 3

    def test_queue_settings_from_config(self, hook_env, monkeypatch):
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("QUEUE_BACKOFF_MS", "100")
        assert main(io.StringIO('{"session_id": "s1"}')) == 0
        assert pending_jobs(hook_env)[0]["retry_policy"] == {"max_attempts": 5, "backoff_ms": 100}

    def test_no_input(self, hook_env):
        assert main(io.StringIO("")) == 0
        assert queue_counts(hook_env / ".hooks-queue")[STATUS_PENDING] == 0

    def test_missing_vault(self, hook_env, monkeypatch, tmp_path):
        monkeypatch.setenv("OBSIDIAN_VAULT", str(tmp_path / "no-vault"))
        assert main(io.StringIO('{"session_id": "s1"}')) == 0
        assert not (tmp_path / "no-vault").exists()

    def test_recursion_guard(self, hook_env, monkeypatch):
        """Hooks fired inside our own summarizer sessions do nothing."""
        monkeypatch.setenv(RECURSION_GUARD_ENV, "1")
        assert main(io.StringIO('{"session_id": "s1"}')) == 0
        assert not (hook_env / ".hooks-queue").exists()

    def test_invalid_config_still_exits_zero(self, hook_env, monkeypatch):
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "many")
        assert main(io.StringIO('{"session_id": "s1"}')) == 0
