"""Re-run extraction for session notes that only got a heuristic summary.

Selection:
- summary_engine starts with "heuristic"
- notes carrying enriched_at are skipped unless --force
- optional project / since-date filters, oldest first, capped by --limit

A note is rewritten in place only when the new extraction is LLM-native;
a second heuristic result leaves the file untouched.
"""
import argparse
import logging
import re
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .common import detect_session_type, iso_timestamp, now_ms, parse_frontmatter_lines
from .config import ConfigError, PipelineConfig, load_config
from .daily import EXIT_FATAL, EXIT_LOCKED, EXIT_OK, setup_logging
from .dedup import build_vault_index, iter_markdown_files
from .discovery import ClaudeCodeAdapter, ClaudeDesktopAdapter, find_metadata_files
from .extract import extract_knowledge
from .llm import Summarizer, Throttle, build_summarizer
from .lock import LockHeldError, held_lock
from .models import ENGINE_HEURISTIC, SOURCE_CLAUDE_CODE, SOURCE_CLAUDE_DESKTOP, DiscoveredSession
from .notes import WriteOutcome, rewrite_session_note, write_knowledge_notes
from .transcript import first_user_message, read_transcript

logger = logging.getLogger("knowledge-pipeline.re-enrich")

DEFAULT_LIMIT = 10
_SOURCE_LINE_RE = re.compile(r"^- Transcript: `(.+)`\s*$")


@dataclass
class NoteRecord:
    """A session note read back from the vault."""
    path: Path
    meta: dict
    title: str
    transcript_hint: str = ""

    @property
    def date(self) -> str:
        return self.meta.get("date", "")


def read_note(path: Path) -> Optional[NoteRecord]:
    """Parse a session note's full front-matter, H1 title and Source line."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug("Cannot read %s: %s", path, e)
        return None

    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return None
    try:
        end = lines.index("---", 1)
    except ValueError:
        return None

    meta = parse_frontmatter_lines(lines[1:end])
    title = ""
    hint = ""
    for line in lines[end + 1:]:
        if not title and line.startswith("# "):
            title = line[2:].strip()
        match = _SOURCE_LINE_RE.match(line)
        if match:
            hint = match.group(1)
    return NoteRecord(path=path, meta=meta, title=title, transcript_hint=hint)


def needs_enrichment(record: NoteRecord, force: bool = False) -> bool:
    if record.meta.get("type") != "session" or not record.meta.get("session_id"):
        return False
    if not record.meta.get("summary_engine", "").startswith(ENGINE_HEURISTIC):
        return False
    if record.meta.get("enriched_at") and not force:
        return False
    return True


def select_notes(vault: Path, limit: int = DEFAULT_LIMIT, project: Optional[str] = None,
                 since: Optional[str] = None, force: bool = False) -> List[NoteRecord]:
    """Heuristic session notes matching the filters, oldest first, at most limit."""
    selected = []
    for path in iter_markdown_files(Path(vault) / "Sessions"):
        record = read_note(path)
        if record is None or not needs_enrichment(record, force):
            continue
        if project and record.meta.get("project", "").lower() != project.lower():
            continue
        if since and record.date < since:
            continue
        selected.append(record)
    selected.sort(key=lambda r: (r.date, r.meta.get("time", ""), str(r.path)))
    return selected[:limit] if limit > 0 else selected


def resolve_transcript(record: NoteRecord, config: PipelineConfig) -> Optional[str]:
    """Find the transcript for a note: its Source line first, then the source's own records."""
    session_id = record.meta["session_id"]
    if record.transcript_hint:
        hinted = Path(re.sub(r"^~(?=/|$)", str(config.home), record.transcript_hint))
        if hinted.exists():
            return str(hinted)

    if record.meta.get("session_source") == SOURCE_CLAUDE_DESKTOP:
        adapter = ClaudeDesktopAdapter(config.desktop_sessions_dir, config.home)
        if not adapter.sessions_dir.is_dir():
            return None
        for metadata_path in find_metadata_files(adapter.sessions_dir):
            session = adapter.load_session(metadata_path)
            if session is not None and session.id == session_id:
                return session.transcript_path
        return None

    found = ClaudeCodeAdapter(config.claude_root, config.home).find_transcript(session_id)
    return str(found) if found else None


def _note_timestamp(record: NoteRecord) -> int:
    try:
        parsed = datetime.strptime(f"{record.date} {record.meta.get('time', '00:00')}",
                                   "%Y-%m-%d %H:%M")
    except ValueError:
        return now_ms()
    return int(parsed.timestamp() * 1000)


def session_from_note(record: NoteRecord, transcript_path: str) -> DiscoveredSession:
    last_activity = _note_timestamp(record)
    try:
        created_at = int(record.meta.get("created_at") or last_activity)
    except ValueError:
        created_at = last_activity
    return DiscoveredSession(
        id=record.meta["session_id"],
        source=record.meta.get("session_source") or SOURCE_CLAUDE_CODE,
        title=record.title,
        created_at=min(created_at, last_activity),
        last_activity_at=last_activity,
        domain=record.meta.get("domain") or "personal",
        project=record.meta.get("project", ""),
        transcript_path=transcript_path,
        model=record.meta.get("model", ""),
    )


def enrich_note(record: NoteRecord, config: PipelineConfig, summarizer: Optional[Summarizer],
                throttle: Optional[Throttle] = None) -> str:
    """Re-extract one note. Returns "enriched", "would-enrich", "no-transcript" or "still-heuristic"."""
    transcript_path = resolve_transcript(record, config)
    if not transcript_path:
        logger.info("No transcript found for %s", record.path.name)
        return "no-transcript"

    session = session_from_note(record, transcript_path)
    messages = read_transcript(session)
    if config.dry_run:
        logger.info("(dry-run) Would re-enrich %s from %s", record.path.name, transcript_path)
        return "would-enrich"

    extraction = extract_knowledge(session, messages, summarizer, config, throttle)
    if extraction.is_heuristic:
        logger.info("Still heuristic for %s (%s), leaving note unchanged",
                    record.path.name, extraction.engine)
        return "still-heuristic"

    session_type = record.meta.get("session_type") or detect_session_type(
        f"{session.title}\n{first_user_message(messages) or ''}")
    rewrite_session_note(record.path, session, extraction, session_type,
                         enriched_at=iso_timestamp(), home=config.home)

    index = build_vault_index(config.vault_path)
    knowledge = write_knowledge_notes(
        config.vault_path, extraction, session, WriteOutcome(record.path, written=True), index,
        config.knowledge_confidence, dry_run=False, home=config.home,
    )
    logger.info("Enriched %s (%d knowledge notes)", record.path.name, len(knowledge))
    return "enriched"


def run_re_enrich(config: PipelineConfig, limit: int = DEFAULT_LIMIT,
                  project: Optional[str] = None, since: Optional[str] = None,
                  force: bool = False, summarizer: Optional[Summarizer] = None) -> dict:
    """Re-enrich matching notes under the pipeline lock.

    Raises:
        LockHeldError: If another run holds the lock
    """
    counts = {"selected": 0, "enriched": 0, "would-enrich": 0,
              "no-transcript": 0, "still-heuristic": 0, "errors": 0}
    if not config.vault_path.is_dir():
        logger.info("Vault not found at %s, nothing to do", config.vault_path)
        return counts

    with held_lock(config.state_dir):
        records = select_notes(config.vault_path, limit, project, since, force)
        counts["selected"] = len(records)
        logger.info("Selected %d note(s) for re-enrichment", len(records))
        if not records:
            return counts

        if summarizer is None and not config.dry_run:
            summarizer = build_summarizer(config)
        throttle = Throttle(config.llm_delay_ms)
        for record in records:
            try:
                status = enrich_note(record, config, summarizer, throttle)
            except Exception:
                logger.exception("Error re-enriching %s", record.path)
                counts["errors"] += 1
                continue
            counts[status] += 1

    logger.info("Re-enrichment complete: %s", counts)
    return counts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-pipeline-reenrich",
        description="Replace heuristic session summaries with LLM extractions.",
    )
    parser.add_argument("--vault", type=Path, help="Vault root (overrides OBSIDIAN_VAULT)")
    parser.add_argument("--dry-run", action="store_true", help="List notes that would be re-enriched")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT,
                        help=f"Maximum notes to process (default {DEFAULT_LIMIT}, 0 for all)")
    parser.add_argument("--filter-project", help="Only notes for this project")
    parser.add_argument("--filter-since", help="Only notes dated on or after YYYY-MM-DD")
    parser.add_argument("--force", action="store_true", help="Include notes already enriched")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.filter_since:
        try:
            datetime.strptime(args.filter_since, "%Y-%m-%d")
        except ValueError:
            build_parser().error(f"--filter-since must be YYYY-MM-DD, got {args.filter_since!r}")

    try:
        config = load_config()
    except ConfigError as e:
        setup_logging()
        logger.error("Invalid configuration: %s", e)
        return EXIT_FATAL

    overrides = {}
    if args.vault is not None:
        overrides["vault_path"] = args.vault.expanduser()
    if args.dry_run:
        overrides["dry_run"] = True
    config = config.with_overrides(**overrides)
    setup_logging(config.debug)

    try:
        run_re_enrich(config, args.limit, args.filter_project, args.filter_since, args.force)
    except LockHeldError as e:
        logger.info("%s, exiting", e)
        return EXIT_LOCKED
    except Exception:
        logger.exception("Fatal re-enrichment error")
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
