"""Single-host process lock for pipeline runs.

File: <state_dir>/backfill-lock.json = {"pid", "acquired_at", "hostname"}

A lock whose pid is not running is dead and removed. A lock older than
STALE_LOCK_MS is stale and stolen even when its pid is alive. Corrupt lock
files are removed.
"""
import json
import logging
import os
import socket
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from .common import iso_timestamp, now_ms, parse_timestamp_ms

logger = logging.getLogger("knowledge-pipeline.lock")

LOCK_FILE = "backfill-lock.json"
STALE_LOCK_MS = 30 * 60 * 1000


class LockHeldError(Exception):
    """Raised when another live process holds a fresh lock."""


@dataclass
class LockData:
    pid: int
    acquired_at: str
    hostname: str


def is_process_alive(pid: int) -> bool:
    """Probe a pid with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


def read_lock(state_dir: Path) -> Optional[LockData]:
    """Read the lock file. Raises ValueError if it exists but is corrupt."""
    lock_path = Path(state_dir) / LOCK_FILE
    try:
        raw = lock_path.read_text()
    except FileNotFoundError:
        return None
    try:
        data = json.loads(raw)
        return LockData(pid=int(data["pid"]), acquired_at=str(data["acquired_at"]),
                        hostname=str(data.get("hostname", "")))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"corrupt lock file: {e}") from e


def _create_lock_file(lock_path: Path) -> bool:
    lock = LockData(pid=os.getpid(), acquired_at=iso_timestamp(), hostname=socket.gethostname())
    try:
        fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        logger.info("Lock %s was taken by another process", lock_path)
        return False
    with os.fdopen(fd, "w") as f:
        json.dump(asdict(lock), f, indent=2)
    return True


def acquire_lock(state_dir: Path, now: Optional[int] = None) -> bool:
    """Try to take the pipeline lock.

    Returns:
        True if acquired, False if a live and fresh holder exists
    """
    state_dir = Path(state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    lock_path = state_dir / LOCK_FILE
    now = now if now is not None else now_ms()

    try:
        existing = read_lock(state_dir)
    except ValueError as e:
        logger.warning("%s, removing", e)
        existing = None
        lock_path.unlink(missing_ok=True)

    if existing is not None:
        if is_process_alive(existing.pid):
            acquired_ms = parse_timestamp_ms(existing.acquired_at)
            age = now - acquired_ms if acquired_ms is not None else None
            if age is not None and age < STALE_LOCK_MS:
                logger.info("Lock held by PID %d on %s (age: %ds)",
                            existing.pid, existing.hostname, age // 1000)
                return False
            logger.warning("Stale lock from PID %d (age: %s), stealing", existing.pid,
                           f"{age // 1000}s" if age is not None else "unknown")
        else:
            logger.info("Dead lock from PID %d, removing", existing.pid)
        lock_path.unlink(missing_ok=True)

    return _create_lock_file(lock_path)


def release_lock(state_dir: Path) -> None:
    """Remove the lock if this process holds it."""
    lock_path = Path(state_dir) / LOCK_FILE
    try:
        existing = read_lock(state_dir)
    except ValueError:
        existing = None
    if existing is not None and existing.pid != os.getpid():
        logger.warning("Lock now held by PID %d, leaving it in place", existing.pid)
        return
    try:
        lock_path.unlink(missing_ok=True)
    except OSError as e:
        logger.error("Failed to release lock %s: %s", lock_path, e)
        return
    logger.debug("Lock released")


@contextmanager
def held_lock(state_dir: Path):
    """Hold the pipeline lock for the duration of a with-block.

    Raises:
        LockHeldError: If another live, fresh holder owns the lock
    """
    if not acquire_lock(state_dir):
        raise LockHeldError(f"pipeline lock in {state_dir} is held by another process")
    try:
        yield
    finally:
        release_lock(state_dir)
