"""Markdown writers for session, knowledge and digest notes.

Layout under the vault:
    Sessions/YYYY/MM/<date>_<slug>.md            session notes
    Sessions/YYYY/MM/<date>_digest.md            daily digests
    Knowledge/{decisions,patterns,learnings}/<date>_<slug>.md

Writers never overwrite: a taken name gets a _2, _3, ... suffix. In dry-run
mode nothing is written and the outcome carries the would-be path.
"""
import logging
import os
import tempfile
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .common import date_string, next_available_path, slugify, time_string
from .dedup import VaultIndex, is_duplicate_knowledge
from .models import DiscoveredSession, ExtractionResult
from .sanitize import sanitize_text, scan_for_secrets

logger = logging.getLogger("knowledge-pipeline.notes")

PIPELINE_SOURCE = "daily-pipeline"
KNOWLEDGE_SLUG_MAX = 60
_FRONTMATTER_VALUE_MAX = 300

KNOWLEDGE_FOLDERS = {
    "decision": "decisions",
    "pattern": "patterns",
    "learning": "learnings",
}


@dataclass
class WriteOutcome:
    """Where a note went (or would go, in dry-run)."""
    path: Path
    written: bool

    @property
    def link_target(self) -> str:
        return self.path.stem

    def __str__(self) -> str:
        return str(self.path) if self.written else f"would write: {self.path}"


@dataclass
class KnowledgeCandidate:
    kind: str
    title: str
    summary: str
    rationale: str
    confidence: float

    @property
    def slug(self) -> str:
        return slugify(self.title, KNOWLEDGE_SLUG_MAX) or "captured-item"


def _fm(value: Optional[str], home: Optional[Path] = None) -> str:
    """Flatten a value for a double-quoted front-matter line."""
    flat = " ".join(sanitize_text(value or "", home).split()).replace('"', "'")
    return flat[:_FRONTMATTER_VALUE_MAX]


def _write_new(directory: Path, base_name: str, content: str) -> Path:
    """Create a new file, picking a free suffixed name on collision."""
    directory.mkdir(parents=True, exist_ok=True)
    while True:
        path = next_available_path(directory, base_name)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(content)
            return path
        except FileExistsError:
            continue


def _note_dir(vault: Path, date: str) -> Path:
    year, month, _ = date.split("-")
    return Path(vault) / "Sessions" / year / month


def _log_secrets(content: str, path: Path) -> None:
    findings = scan_for_secrets(content)
    if findings:
        logger.warning("Rendered note %s still matches %d secret pattern(s)", path, len(findings))


# ──────────────────────────────────────────────
# Session notes
# ──────────────────────────────────────────────


def session_note_date(session: DiscoveredSession) -> str:
    return date_string(session.last_activity_at)


def render_session_note(session: DiscoveredSession, extraction: ExtractionResult,
                        session_type: str, home: Optional[Path] = None,
                        enriched_at: Optional[str] = None) -> str:
    date = session_note_date(session)
    title = sanitize_text(session.title, home) or "Untitled session"

    lines = [
        "---",
        f"date: {date}",
        f'time: "{time_string(session.last_activity_at)}"',
        "type: session",
        f'session_id: "{_fm(session.id)}"',
        f'summary: "{_fm(extraction.summary_line(), home)}"',
        f"source: {PIPELINE_SOURCE}",
        f"session_source: {session.source}",
        f"session_type: {session_type}",
        f"domain: {session.domain}",
        f'project: "{_fm(session.project, home)}"',
        "status: completed",
        f'model: "{_fm(session.model)}"',
        f"summary_engine: {extraction.engine}",
        f'summary_model: "{_fm(extraction.model)}"',
        f"significance: {extraction.significance:.2f}",
        f'created_at: "{session.created_at}"',
    ]
    if enriched_at:
        lines.append(f'enriched_at: "{enriched_at}"')
    lines += [
        "tags:",
        "  - session",
        f"  - {session.domain}",
        f"  - {session_type}",
        "---",
        "",
        f"# {title}",
        "",
        "## Executive Summary",
        "",
    ]
    lines += [f"- {sanitize_text(item, home)}" for item in extraction.executive_summary] or ["- (none)"]
    lines += ["", "## Digest", "", sanitize_text(extraction.digest, home) or "No digest available.", ""]

    if extraction.key_decisions:
        lines += ["## Key Decisions", ""]
        for item in extraction.key_decisions:
            rationale = sanitize_text(item.get("rationale", ""), home)
            entry = f"- **{sanitize_text(item['decision'], home)}**"
            lines.append(f"{entry}: {rationale}" if rationale else entry)
        lines.append("")

    for heading, items in (("Patterns", extraction.patterns), ("Learnings", extraction.learnings)):
        if items:
            lines += [f"## {heading}", ""]
            lines += [f"- **{sanitize_text(i['title'], home)}**: {sanitize_text(i.get('summary', ''), home)}"
                      for i in items]
            lines.append("")

    if extraction.action_items:
        lines += ["## Action Items", ""]
        lines += [f"- [ ] {sanitize_text(item, home)}" for item in extraction.action_items]
        lines.append("")

    if session.transcript_path:
        lines += ["## Source", "", f"- Transcript: `{sanitize_text(session.transcript_path, home)}`", ""]

    lines += ["---", f"*Auto-captured by the knowledge pipeline ({extraction.engine})*", ""]
    return "\n".join(lines)


def write_session_note(vault: Path, session: DiscoveredSession, extraction: ExtractionResult,
                       session_type: str, dry_run: bool = False,
                       home: Optional[Path] = None) -> WriteOutcome:
    date = session_note_date(session)
    directory = _note_dir(vault, date)
    base_name = f"{date}_{slugify(session.title) or 'session'}"
    content = render_session_note(session, extraction, session_type, home)

    if dry_run:
        target = next_available_path(directory, base_name)
        logger.info("(dry-run) Would write session note: %s", target)
        return WriteOutcome(target, written=False)

    path = _write_new(directory, base_name, content)
    _log_secrets(content, path)
    logger.info("Wrote session note: %s", path)
    return WriteOutcome(path, written=True)


def rewrite_session_note(path: Path, session: DiscoveredSession, extraction: ExtractionResult,
                         session_type: str, enriched_at: str,
                         home: Optional[Path] = None) -> None:
    """Replace an existing session note in place (re-enrichment only)."""
    path = Path(path)
    content = render_session_note(session, extraction, session_type, home, enriched_at=enriched_at)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.info("Rewrote session note: %s", path)


# ──────────────────────────────────────────────
# Knowledge notes
# ──────────────────────────────────────────────


def knowledge_candidates(extraction: ExtractionResult,
                         home: Optional[Path] = None) -> List[KnowledgeCandidate]:
    """Flatten decisions, patterns and learnings into candidates."""
    candidates = []
    for item in extraction.key_decisions:
        candidates.append(KnowledgeCandidate(
            kind="decision",
            title=sanitize_text(item.get("decision", ""), home) or "Untitled",
            summary=sanitize_text(item.get("decision", ""), home),
            rationale=sanitize_text(item.get("rationale", ""), home),
            confidence=item.get("confidence", 0.0),
        ))
    for kind, items in (("pattern", extraction.patterns), ("learning", extraction.learnings)):
        for item in items:
            candidates.append(KnowledgeCandidate(
                kind=kind,
                title=sanitize_text(item.get("title", ""), home) or "Untitled",
                summary=sanitize_text(item.get("summary", ""), home),
                rationale="",
                confidence=item.get("confidence", 0.0),
            ))
    return candidates


def select_knowledge(candidates: Sequence[KnowledgeCandidate], index: VaultIndex,
                     confidence_threshold: float) -> List[KnowledgeCandidate]:
    """Keep candidates at or above the confidence threshold that are not duplicates."""
    selected = []
    for candidate in candidates:
        if candidate.confidence < confidence_threshold:
            continue
        if is_duplicate_knowledge(candidate.slug, candidate.summary or candidate.title, index):
            logger.info("Skipping duplicate %s: %s", candidate.kind, candidate.title)
            continue
        selected.append(candidate)
    return selected


def render_knowledge_note(candidate: KnowledgeCandidate, date: str, source_link: str,
                          domain: str, project: str) -> str:
    lines = [
        "---",
        f"date: {date}",
        f"type: {candidate.kind}",
        f'summary: "{_fm(candidate.summary or candidate.title)}"',
        f"domain: {domain}",
        "status: active",
        f"source: {PIPELINE_SOURCE}",
        f"extraction_confidence: {candidate.confidence:.2f}",
    ]
    if project:
        lines.append(f'project: "{_fm(project)}"')
    lines += [
        "tags:",
        "  - knowledge",
        f"  - {candidate.kind}",
        "source_sessions:",
        f'  - "[[{source_link}]]"',
        "---",
        "",
        f"# {candidate.title}",
        "",
        "## Context",
        "",
        f"Auto-extracted from session note: [[{source_link}]].",
        "",
        "## Insight",
        "",
        candidate.summary or candidate.title,
        "",
    ]
    if candidate.rationale:
        lines += ["## Rationale", "", candidate.rationale, ""]
    lines += ["---", "*Auto-captured by the knowledge pipeline*", ""]
    return "\n".join(lines)


def write_knowledge_note(vault: Path, candidate: KnowledgeCandidate, date: str,
                         source_link: str, domain: str, project: str,
                         dry_run: bool = False) -> WriteOutcome:
    directory = Path(vault) / "Knowledge" / KNOWLEDGE_FOLDERS[candidate.kind]
    base_name = f"{date}_{candidate.slug}"

    if dry_run:
        target = next_available_path(directory, base_name)
        logger.info("(dry-run) Would write %s note: %s", candidate.kind, target)
        return WriteOutcome(target, written=False)

    content = render_knowledge_note(candidate, date, source_link, domain, project)
    path = _write_new(directory, base_name, content)
    logger.info("Wrote %s note: %s", candidate.kind, path)
    return WriteOutcome(path, written=True)


def write_knowledge_notes(vault: Path, extraction: ExtractionResult, session: DiscoveredSession,
                          source_note: WriteOutcome, index: VaultIndex,
                          confidence_threshold: float, dry_run: bool = False,
                          home: Optional[Path] = None) -> List[WriteOutcome]:
    """Write every confident, non-duplicate knowledge item linked to source_note."""
    selected = select_knowledge(knowledge_candidates(extraction, home), index, confidence_threshold)
    date = session_note_date(session)
    project = sanitize_text(session.project, home)
    return [
        write_knowledge_note(vault, candidate, date, source_note.link_target,
                             session.domain, project, dry_run)
        for candidate in selected
    ]


# ──────────────────────────────────────────────
# Digest notes
# ──────────────────────────────────────────────


def digest_fallback_narrative(date: str, count: int) -> str:
    return f"Daily digest for {date} with {count} sessions. LLM synthesis unavailable."


def render_digest_note(date: str, sessions: Sequence[Dict], digest: Dict) -> str:
    domains = Counter(s.get("domain", "personal") for s in sessions)
    domain = domains.most_common(1)[0][0] if domains else "personal"
    projects = sorted({s.get("project") for s in sessions if s.get("project")})

    def bullet_list(items, empty, prefix="- "):
        return [f"{prefix}{item}" for item in items] if items else [f"- {empty}"]

    lines = [
        "---",
        f"date: {date}",
        "type: session",
        "session_type: digest",
        f'summary: "Daily digest for {date} with {len(sessions)} sessions"',
        f"source: {PIPELINE_SOURCE}",
        f"domain: {domain}",
        "status: completed",
        "tags:",
        "  - session",
        "  - digest",
    ]
    if projects:
        lines.append("projects:")
        lines += [f'  - "{_fm(p)}"' for p in projects]
    lines += ["---", "", f"# Daily Digest: {date}", "", "## Narrative", "",
              digest.get("narrative") or digest_fallback_narrative(date, len(sessions)), "",
              "## Sessions", ""]
    for s in sessions:
        where = s.get("domain", "personal") + (f" / {s['project']}" if s.get("project") else "")
        link = f"[[{s['note']}]]" if s.get("note") else f"**{s.get('title', '')}**"
        lines += [f"- {link} ({where})", f"  {s.get('summary', '')}"]
    lines += ["", "## Themes", ""]
    lines += bullet_list(digest.get("themes"), "No major themes identified.")
    lines += ["", "## Cross-Session Connections", ""]
    lines += bullet_list(digest.get("connections"), "No cross-session connections identified.")
    lines += ["", "## Unresolved Items", ""]
    lines += bullet_list(digest.get("unresolved_items"), "No unresolved items.", prefix="- [ ] ")
    lines += ["", "---", "*Auto-captured by the knowledge pipeline*", ""]
    return "\n".join(lines)


def write_digest_note(vault: Path, date: str, sessions: Sequence[Dict], digest: Dict,
                      dry_run: bool = False) -> WriteOutcome:
    """Write a daily digest.

    Args:
        vault: Vault root
        date: YYYY-MM-DD
        sessions: Dicts with title, summary, domain, project, note (link target)
        digest: Dict with narrative, themes, connections, unresolved_items
        dry_run: Only report the target path
    """
    directory = _note_dir(vault, date)
    base_name = f"{date}_digest"
    if dry_run:
        target = next_available_path(directory, base_name)
        logger.info("(dry-run) Would write digest: %s", target)
        return WriteOutcome(target, written=False)

    path = _write_new(directory, base_name, render_digest_note(date, sessions, digest))
    logger.info("Wrote digest: %s", path)
    return WriteOutcome(path, written=True)
