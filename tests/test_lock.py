"""Tests for lock.py process lock."""
import json
import os
from unittest.mock import patch

import pytest

from knowledge_pipeline.common import iso_timestamp, now_ms
from knowledge_pipeline.lock import (
    LOCK_FILE,
    STALE_LOCK_MS,
    LockHeldError,
    acquire_lock,
    held_lock,
    is_process_alive,
    read_lock,
    release_lock,
)


def write_lock(state_dir, pid, acquired_at):
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / LOCK_FILE).write_text(json.dumps(
        {"pid": pid, "acquired_at": acquired_at, "hostname": "elsewhere"}))


class TestIsProcessAlive:
    """Tests for is_process_alive()."""

    def test_self_alive(self):
        assert is_process_alive(os.getpid()) is True

    def test_invalid_pid(self):
        assert is_process_alive(0) is False
        assert is_process_alive(-5) is False

    def test_missing_process(self):
        with patch("knowledge_pipeline.lock.os.kill", side_effect=ProcessLookupError):
            assert is_process_alive(12345) is False

    def test_permission_error_means_alive(self):
        with patch("knowledge_pipeline.lock.os.kill", side_effect=PermissionError):
            assert is_process_alive(12345) is True


class TestAcquireLock:
    """Tests for acquire_lock()."""

    def test_fresh_acquire(self, tmp_path):
        assert acquire_lock(tmp_path) is True
        lock = read_lock(tmp_path)
        assert lock.pid == os.getpid()

    def test_live_fresh_holder_blocks(self, tmp_path):
        """Our own pid with a fresh timestamp counts as a live holder."""
        write_lock(tmp_path, os.getpid(), iso_timestamp())
        assert acquire_lock(tmp_path) is False

    def test_dead_holder_removed(self, tmp_path):
        write_lock(tmp_path, 424242, iso_timestamp())
        with patch("knowledge_pipeline.lock.is_process_alive", return_value=False):
            assert acquire_lock(tmp_path) is True
        assert read_lock(tmp_path).pid == os.getpid()

    def test_stale_live_holder_stolen(self, tmp_path):
        """A live holder older than the stale window loses the lock."""
        old = now_ms() - STALE_LOCK_MS - 60_000
        write_lock(tmp_path, os.getpid(), iso_timestamp(old))
        assert acquire_lock(tmp_path) is True

    def test_unparseable_time_treated_as_stale(self, tmp_path):
        write_lock(tmp_path, os.getpid(), "sometime")
        assert acquire_lock(tmp_path) is True

    def test_corrupt_lock_removed(self, tmp_path):
        (tmp_path / LOCK_FILE).write_text("garbage")
        assert acquire_lock(tmp_path) is True

    def test_creates_state_dir(self, tmp_path):
        state_dir = tmp_path / "a" / "b"
        assert acquire_lock(state_dir) is True
        assert (state_dir / LOCK_FILE).exists()


class TestReleaseLock:
    """Tests for release_lock() and held_lock()."""

    def test_release_own_lock(self, tmp_path):
        acquire_lock(tmp_path)
        release_lock(tmp_path)
        assert not (tmp_path / LOCK_FILE).exists()

    def test_foreign_lock_left_in_place(self, tmp_path):
        write_lock(tmp_path, os.getpid() + 1, iso_timestamp())
        release_lock(tmp_path)
        assert (tmp_path / LOCK_FILE).exists()

    def test_release_without_lock(self, tmp_path):
        release_lock(tmp_path)

    def test_held_lock_context(self, tmp_path):
        with held_lock(tmp_path):
            assert (tmp_path / LOCK_FILE).exists()
        assert not (tmp_path / LOCK_FILE).exists()

    def test_held_lock_contention(self, tmp_path):
        write_lock(tmp_path, os.getpid(), iso_timestamp())
        with pytest.raises(LockHeldError):
            with held_lock(tmp_path):
                pass

    def test_held_lock_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with held_lock(tmp_path):
                raise RuntimeError("boom")
        assert not (tmp_path / LOCK_FILE).exists()
