"""Transcript readers: source-specific JSONL formats -> list[Message].

Claude Code transcripts come in two shapes, both one JSON object per line:
- flat:   {"role": "user", "content": "...", "model": ..., "timestamp": ...}
- native: {"type": "user", "message": {"role": ..., "content": [...], "model": ...},
           "timestamp": ...}

Claude Desktop audit logs use {"type": ..., "content"|"message": ...,
"_audit_timestamp": ...} where type is one of user, assistant, system,
tool_use_summary, tool_result.

Corrupt lines are skipped. Missing files read as an empty transcript.
"""
import json
import logging
from pathlib import Path
from typing import Iterator, List, Optional

from .models import SOURCE_CLAUDE_DESKTOP, DiscoveredSession, Message

logger = logging.getLogger("knowledge-pipeline.transcript")

_CODE_ROLES = ("user", "assistant")

_DESKTOP_ROLE_MAP = {
    "user": "user",
    "assistant": "assistant",
    "system": "system",
    "tool_use_summary": "tool",
    "tool_result": "tool_result",
}


def extract_text(content) -> str:
    """Join text from a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "\n".join(texts)
    return ""


def iter_jsonl(path: Path) -> Iterator[dict]:
    """Yield JSON objects from a JSONL file, skipping blank and corrupt lines."""
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entry = json.loads(stripped)
                except (json.JSONDecodeError, ValueError):
                    continue
                if isinstance(entry, dict):
                    yield entry
    except OSError as e:
        logger.debug("Cannot read %s: %s", path, e)


def read_code_transcript(path) -> List[Message]:
    """Parse a Claude Code session transcript."""
    path = Path(path)
    if not path.exists():
        return []

    messages = []
    for entry in iter_jsonl(path):
        inner = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        role = entry.get("role") or inner.get("role") or entry.get("type")
        if role not in _CODE_ROLES:
            continue
        raw = entry["content"] if "content" in entry else inner.get("content")
        content = extract_text(raw).strip()
        if not content:
            continue
        model = entry.get("model") or inner.get("model")
        timestamp = entry.get("timestamp")
        messages.append(Message(
            role=role,
            content=content,
            timestamp=str(timestamp) if timestamp else None,
            model=str(model) if model else None,
        ))
    return messages


def read_desktop_audit(path) -> List[Message]:
    """Parse a Claude Desktop audit.jsonl transcript."""
    path = Path(path)
    if not path.exists():
        return []

    messages = []
    for entry in iter_jsonl(path):
        role = _DESKTOP_ROLE_MAP.get(entry.get("type"))
        if not role:
            continue
        if "content" in entry:
            raw = entry["content"]
        elif isinstance(entry.get("message"), dict):
            raw = entry["message"].get("content")
        else:
            raw = entry.get("summary")
        content = extract_text(raw).strip()
        if not content:
            continue
        timestamp = entry.get("_audit_timestamp")
        model = entry.get("model")
        messages.append(Message(
            role=role,
            content=content,
            timestamp=str(timestamp) if timestamp else None,
            model=str(model) if model else None,
        ))
    return messages


def read_transcript(session: DiscoveredSession) -> List[Message]:
    """Read the transcript for a discovered session using its source's format."""
    if not session.transcript_path:
        return []
    if session.source == SOURCE_CLAUDE_DESKTOP:
        return read_desktop_audit(session.transcript_path)
    return read_code_transcript(session.transcript_path)


def first_user_message(messages: List[Message]) -> Optional[str]:
    for message in messages:
        if message.role == "user":
            return message.content
    return None
