"""Session-end hook: enqueue the finished session for the worker.

The hook must return fast and never fail the session that triggered it, so
every early exit is status 0. Stdin is read with a short timeout because some
hook runners leave it open without writing anything.
"""
import json
import logging
import os
import selectors
import sys
import time
from pathlib import Path
from typing import Optional, TextIO

from .config import ConfigError, load_config
from .daily import setup_logging
from .jobqueue import RetryPolicy, enqueue_job
from .llm import RECURSION_GUARD_ENV
from .models import SOURCE_CLAUDE_CODE
from .transcript import first_user_message, read_code_transcript

logger = logging.getLogger("knowledge-pipeline.capture")

STDIN_TIMEOUT_S = 0.5
_READ_CHUNK = 65536
_TITLE_CHARS = 80


def _read_fd_until(fd: int, timeout_s: float) -> str:
    """Read fd until EOF or until timeout_s has passed in total, whichever is first."""
    deadline = time.monotonic() + timeout_s
    chunks = []
    selector = selectors.DefaultSelector()
    try:
        selector.register(fd, selectors.EVENT_READ)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not selector.select(remaining):
                logger.debug("Hook input not closed within %.1fs, using what arrived", timeout_s)
                break
            chunk = os.read(fd, _READ_CHUNK)
            if not chunk:
                break
            chunks.append(chunk)
    finally:
        selector.close()
    return b"".join(chunks).decode("utf-8", errors="replace")


def read_hook_input(stream: TextIO = None, timeout_s: float = STDIN_TIMEOUT_S) -> Optional[dict]:
    """Read the hook's JSON payload, or None if nothing usable arrives in time."""
    stream = stream if stream is not None else sys.stdin
    if stream is None or stream.closed:
        return None

    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        # In-memory stream: already complete
        raw = stream.read()
    else:
        try:
            raw = _read_fd_until(fd, timeout_s)
        except PermissionError:
            # Regular files cannot be polled; they always reach EOF
            raw = stream.read()

    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        logger.warning("Hook input is not valid JSON, ignoring")
        return None
    return data if isinstance(data, dict) else None


def build_payload(hook_input: dict) -> dict:
    """Job payload for a captured session. The title is the first user message."""
    transcript_path = str(hook_input.get("transcript_path") or "")
    title = ""
    if transcript_path and Path(transcript_path).exists():
        first = first_user_message(read_code_transcript(transcript_path))
        if first:
            title = " ".join(first.split())[:_TITLE_CHARS]
    return {
        "session_id": str(hook_input.get("session_id") or ""),
        "transcript_path": transcript_path,
        "hook_event_name": str(hook_input.get("hook_event_name") or ""),
        "source": SOURCE_CLAUDE_CODE,
        "title": title,
        "cwd": str(hook_input.get("cwd") or ""),
    }


def main(stream: TextIO = None) -> int:
    # Sessions started by our own summarizer must not enqueue themselves
    if os.environ.get(RECURSION_GUARD_ENV):
        return 0

    try:
        config = load_config()
    except ConfigError as e:
        setup_logging()
        logger.error("Invalid configuration: %s", e)
        return 0
    setup_logging(config.debug)

    hook_input = read_hook_input(stream)
    if not hook_input:
        return 0
    if not config.vault_path.is_dir():
        logger.debug("Vault not found at %s, skipping capture", config.vault_path)
        return 0

    payload = build_payload(hook_input)
    if not payload["session_id"] and not payload["transcript_path"]:
        return 0

    try:
        enqueue_job(
            config.queue_dir,
            payload,
            retry_policy=RetryPolicy(config.queue_max_attempts, config.queue_backoff_ms),
        )
    except OSError as e:
        logger.error("Could not enqueue session %s: %s", payload["session_id"], e)
    return 0


if __name__ == "__main__":
    sys.exit(main())
