"""Small helpers shared across the pipeline: slugs, dates, path heuristics."""
import json
import math
import os
import re
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

DOMAIN_WORK = "work"
DOMAIN_PERSONAL = "personal"
DOMAIN_OPENSOURCE = "opensource"
_DOMAIN_ROOTS = (DOMAIN_WORK, DOMAIN_PERSONAL, DOMAIN_OPENSOURCE)

_TRIVIAL_TITLE_RE = re.compile(
    r"^(ok|okay|thanks|thank you|thx|got it|nice|cool|hello|hi|hey|done|yep|yes)$"
)

# First match wins.
_SESSION_TYPE_RULES = (
    ("implementation", re.compile(r"implement|build|create|add feature|write code")),
    ("debugging", re.compile(r"debug|fix|bug|error|troubleshoot")),
    ("research", re.compile(r"research|investigate|find out")),
    ("planning", re.compile(r"plan|design|architect|strategy")),
    ("review", re.compile(r"review|audit|check|validate")),
    ("exploration", re.compile(r"explore|browse|understand|learn")),
)

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")
_FRONTMATTER_LINE_RE = re.compile(r'^([a-z_]+):\s*"?([^"]*)"?\s*$')


def now_ms() -> int:
    return int(time.time() * 1000)


def slugify(text: str, max_len: int = 50) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim to max_len."""
    slug = _SLUG_STRIP_RE.sub("-", (text or "").lower()).strip("-")
    return slug[:max_len].rstrip("-")


def date_string(ms: Optional[int] = None) -> str:
    """Local date as YYYY-MM-DD for a millisecond timestamp (default: now)."""
    ts = (ms if ms is not None else now_ms()) / 1000.0
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d")


def time_string(ms: Optional[int] = None) -> str:
    ts = (ms if ms is not None else now_ms()) / 1000.0
    return datetime.fromtimestamp(ts).strftime("%H:%M")


def iso_timestamp(ms: Optional[int] = None) -> str:
    """UTC ISO-8601 timestamp with a Z suffix."""
    ts = (ms if ms is not None else now_ms()) / 1000.0
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ts))


def parse_timestamp_ms(value) -> Optional[int]:
    """Accept epoch milliseconds (int/float/numeric str) or ISO-8601 text.

    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return int(float(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return int(parsed.timestamp() * 1000)


def _normalize_path(path: str) -> str:
    return unquote(path or "").replace("\\", "/")


def detect_domain(path: str, home: Path) -> str:
    """Classify a working directory by the workspace root it sits under."""
    normalized = _normalize_path(path)
    home_str = str(home).replace("\\", "/").rstrip("/")
    for root in _DOMAIN_ROOTS:
        if f"{home_str}/{root}/" in normalized:
            return root
    return DOMAIN_PERSONAL


def detect_project(path: str, home: Path) -> str:
    """Best-effort project name for a working directory or transcript path."""
    normalized = _normalize_path(path)
    if not normalized:
        return ""
    home_str = str(home).replace("\\", "/").rstrip("/")

    for root in _DOMAIN_ROOTS:
        marker = f"{home_str}/{root}/"
        if marker in normalized:
            after = normalized.split(marker, 1)[1]
            project = next((part for part in after.split("/") if part), "")
            if project:
                return project

    if "/.claude/projects/" in normalized:
        encoded = normalized.split("/.claude/projects/", 1)[1].split("/")[0]
        parts = [p for p in encoded.lstrip("-").split("-") if p]
        if parts:
            return parts[-1]

    parent = Path(normalized).parent.name
    return parent if parent and parent != "." else ""


def detect_session_type(text: str) -> str:
    lower = (text or "").lower()
    for session_type, pattern in _SESSION_TYPE_RULES:
        if pattern.search(lower):
            return session_type
    return "implementation"


def is_trivial_title(title: Optional[str]) -> bool:
    """True for empty titles and one-word acknowledgements like 'thanks'."""
    lower = (title or "").strip().lower()
    if not lower:
        return True
    return bool(_TRIVIAL_TITLE_RE.match(lower))


def parse_frontmatter_lines(lines) -> dict:
    """Parse simple `key: value` lines (values optionally double-quoted)."""
    result = {}
    for line in lines:
        match = _FRONTMATTER_LINE_RE.match(line.rstrip("\n"))
        if match:
            result[match.group(1)] = match.group(2)
    return result


def next_available_path(directory: Path, base_name: str, suffix: str = ".md") -> Path:
    """Return directory/base_name.md, or the first free base_name_N.md (N >= 2)."""
    candidate = directory / f"{base_name}{suffix}"
    counter = 2
    while candidate.exists():
        candidate = directory / f"{base_name}_{counter}{suffix}"
        counter += 1
    return candidate


def write_json_atomic(target: Path, data) -> None:
    """Write JSON to a temp file in target's directory, then rename over target.

    Uses tempfile + os.replace for POSIX-atomic rename, preventing
    corrupt reads if the process crashes mid-write.
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, target)
    except Exception:
        # Clean up temp file on failure
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
