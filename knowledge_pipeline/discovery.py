"""Discovery adapters: find sessions created at or after a timestamp.

Each adapter reads one source's on-disk records and returns DiscoveredSession
objects, deduplicated by session id (latest record wins). Adapters never
raise for missing or unreadable files; they log and return what they found.
"""
import json
import logging
from collections import deque
from itertools import islice
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .common import detect_domain, detect_project, parse_timestamp_ms
from .config import PipelineConfig
from .models import SOURCE_CLAUDE_CODE, SOURCE_CLAUDE_DESKTOP, DiscoveredSession
from .transcript import iter_jsonl

logger = logging.getLogger("knowledge-pipeline.discovery")

_META_HEAD_LINES = 30
_META_TAIL_LINES = 10
_DESKTOP_MAX_DEPTH = 6


def dedupe_latest(sessions: Iterable[DiscoveredSession]) -> List[DiscoveredSession]:
    """Keep one session per id: the one with the latest activity."""
    by_id: Dict[str, DiscoveredSession] = {}
    for session in sessions:
        existing = by_id.get(session.id)
        if existing is None or session.last_activity_at > existing.last_activity_at:
            by_id[session.id] = session
    return list(by_id.values())


class DiscoveryAdapter:
    """Base class: one adapter per session source."""

    source = ""

    def discover(self, since_ms: int) -> List[DiscoveredSession]:
        raise NotImplementedError


# ──────────────────────────────────────────────
# Claude Code: ~/.claude/history.jsonl + projects/<encoded>/<id>.jsonl
# ──────────────────────────────────────────────


def encode_project_path(project: str) -> str:
    """'/home/me/work/api' -> '-home-me-work-api' (Claude Code's folder naming)."""
    return project.replace("/", "-")


def _tail_lines(path: Path, count: int) -> List[str]:
    with open(path, encoding="utf-8", errors="replace") as f:
        return list(deque(f, maxlen=count))


def read_transcript_meta(path: Path) -> dict:
    """Pull model, cwd and the latest timestamp from a transcript's head and tail."""
    meta = {"model": "", "cwd": "", "last_timestamp": 0}
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            head = list(islice(f, _META_HEAD_LINES))
        tail = _tail_lines(path, _META_TAIL_LINES)
    except OSError as e:
        logger.debug("Cannot read transcript %s: %s", path, e)
        return meta

    for line in head + tail:
        try:
            entry = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(entry, dict):
            continue
        if not meta["cwd"] and entry.get("cwd"):
            meta["cwd"] = str(entry["cwd"])
        message = entry.get("message")
        if not meta["model"] and isinstance(message, dict) and message.get("model"):
            meta["model"] = str(message["model"])
        ts = parse_timestamp_ms(entry.get("timestamp"))
        if ts and ts > meta["last_timestamp"]:
            meta["last_timestamp"] = ts
    return meta


class ClaudeCodeAdapter(DiscoveryAdapter):
    source = SOURCE_CLAUDE_CODE

    def __init__(self, claude_root: Path, home: Path):
        self.claude_root = Path(claude_root)
        self.home = Path(home)

    @property
    def history_path(self) -> Path:
        return self.claude_root / "history.jsonl"

    def transcript_dir(self, project: str) -> Path:
        return self.claude_root / "projects" / encode_project_path(project)

    def read_history(self) -> List[dict]:
        """History entries with a session id and timestamp."""
        entries = []
        for entry in iter_jsonl(self.history_path):
            session_id = entry.get("sessionId")
            if isinstance(session_id, str) and session_id and parse_timestamp_ms(entry.get("timestamp")):
                entries.append(entry)
        return entries

    def find_transcript(self, session_id: str, project: str = "") -> Optional[Path]:
        """Locate a session transcript, scanning all project dirs when project is unknown."""
        if project:
            candidate = self.transcript_dir(project) / f"{session_id}.jsonl"
            if candidate.exists():
                return candidate
        projects = self.claude_root / "projects"
        if projects.is_dir():
            for candidate in sorted(projects.glob(f"*/{session_id}.jsonl")):
                return candidate
        return None

    def discover(self, since_ms: int) -> List[DiscoveredSession]:
        if not self.history_path.exists():
            logger.info("[%s] history.jsonl not found at %s", self.source, self.history_path)
            return []

        latest: Dict[str, dict] = {}
        for entry in self.read_history():
            ts = parse_timestamp_ms(entry["timestamp"])
            if ts < since_ms:
                continue
            existing = latest.get(entry["sessionId"])
            if existing is None or ts > parse_timestamp_ms(existing["timestamp"]):
                latest[entry["sessionId"]] = entry

        sessions = []
        for session_id, entry in latest.items():
            try:
                session = self.build_session(session_id, entry)
            except (OSError, ValueError, OverflowError, TypeError) as e:
                logger.debug("[%s] skipping unreadable record for %s: %s", self.source, session_id, e)
                continue
            if session is not None:
                sessions.append(session)

        logger.info("[%s] discovered %d sessions since %d", self.source, len(sessions), since_ms)
        return sessions

    def build_session(self, session_id: str, entry: dict) -> Optional[DiscoveredSession]:
        """Session for one history entry, or None when its transcript is missing."""
        project_path = str(entry.get("project") or "")
        transcript_dir = self.transcript_dir(project_path)
        transcript_path = transcript_dir / f"{session_id}.jsonl"
        if not transcript_path.exists():
            logger.info("[%s] transcript not found for %s: %s",
                        self.source, session_id, transcript_path)
            return None

        meta = read_transcript_meta(transcript_path)
        cwd = meta["cwd"] or project_path
        created_at = parse_timestamp_ms(entry["timestamp"])
        subagent_dir = transcript_dir / session_id / "subagents"
        subagents = sorted(str(p) for p in subagent_dir.glob("*.jsonl")) if subagent_dir.is_dir() else []

        return DiscoveredSession(
            id=session_id,
            source=self.source,
            title=str(entry.get("display") or "").strip(),
            created_at=created_at,
            last_activity_at=meta["last_timestamp"] or created_at,
            domain=detect_domain(cwd, self.home),
            project=detect_project(cwd, self.home),
            transcript_path=str(transcript_path),
            model=meta["model"],
            cwd=cwd,
            subagent_paths=subagents,
        )


# ──────────────────────────────────────────────
# Claude Desktop: local_<id>.json metadata + <id>/audit.jsonl
# ──────────────────────────────────────────────


def find_metadata_files(base_dir: Path, max_depth: int = _DESKTOP_MAX_DEPTH) -> List[Path]:
    results = []
    pending = deque([(Path(base_dir), 0)])
    seen = set()
    while pending:
        directory, depth = pending.popleft()
        try:
            real = directory.resolve()
            if real in seen:
                continue
            seen.add(real)
            children = sorted(directory.iterdir())
        except OSError:
            continue
        for child in children:
            try:
                if child.is_dir():
                    if depth < max_depth:
                        pending.append((child, depth + 1))
                elif child.name.startswith("local_") and child.name.endswith(".json"):
                    results.append(child)
            except OSError:
                continue
    return results


def find_audit_path(metadata_path: Path, session_id: str) -> Optional[Path]:
    parent = metadata_path.parent
    for candidate in (
        parent / session_id / "audit.jsonl",
        parent / metadata_path.stem / "audit.jsonl",
        parent.parent / session_id / "audit.jsonl",
    ):
        if candidate.exists():
            return candidate
    return None


class ClaudeDesktopAdapter(DiscoveryAdapter):
    source = SOURCE_CLAUDE_DESKTOP

    def __init__(self, sessions_dir: Path, home: Path):
        self.sessions_dir = Path(sessions_dir)
        self.home = Path(home)

    def load_session(self, metadata_path: Path) -> Optional[DiscoveredSession]:
        """Parse one metadata file. None when unreadable, archived, or undated."""
        try:
            with open(metadata_path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.debug("[%s] cannot parse %s: %s", self.source, metadata_path, e)
            return None
        if not isinstance(data, dict):
            return None
        if data.get("isArchived") or data.get("isDeleted") or data.get("deletedAt"):
            return None

        created_at = parse_timestamp_ms(data.get("createdAt"))
        if not created_at:
            logger.debug("[%s] invalid createdAt in %s", self.source, metadata_path)
            return None
        last_activity = parse_timestamp_ms(data.get("lastActivityAt")) or created_at

        session_id = str(data.get("sessionId") or metadata_path.stem[len("local_"):])
        folders = data.get("userSelectedFolders")
        folders = [str(f) for f in folders if f] if isinstance(folders, list) else []
        cwd = str(data.get("cwd") or "")
        domain_path = folders[0] if folders else cwd
        audit = find_audit_path(metadata_path, session_id)

        return DiscoveredSession(
            id=session_id,
            source=self.source,
            title=str(data.get("title") or "").strip(),
            created_at=created_at,
            last_activity_at=last_activity,
            domain=detect_domain(domain_path, self.home) if domain_path else "personal",
            project=detect_project(domain_path, self.home) if domain_path else "",
            transcript_path=str(audit) if audit else None,
            model=str(data.get("model") or ""),
            cwd=cwd,
        )

    def discover(self, since_ms: int) -> List[DiscoveredSession]:
        if not self.sessions_dir.is_dir():
            logger.info("[%s] sessions directory not found: %s", self.source, self.sessions_dir)
            return []

        found = []
        for metadata_path in find_metadata_files(self.sessions_dir):
            try:
                session = self.load_session(metadata_path)
            except (ValueError, OverflowError, TypeError) as e:
                logger.debug("[%s] skipping unreadable %s: %s", self.source, metadata_path, e)
                continue
            if session is None or session.created_at < since_ms:
                continue
            found.append(session)

        sessions = dedupe_latest(found)
        logger.info("[%s] discovered %d sessions since %d", self.source, len(sessions), since_ms)
        return sessions


def default_adapters(config: PipelineConfig) -> List[DiscoveryAdapter]:
    return [
        ClaudeCodeAdapter(config.claude_root, config.home),
        ClaudeDesktopAdapter(config.desktop_sessions_dir, config.home),
    ]
