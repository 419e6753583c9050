"""Daily batch extraction: discover new sessions and write vault notes.

Run flow:
1. Take the process lock (held elsewhere -> exit 1)
2. Read or initialize the watermark
3. Discover sessions per source since that source's mark
4. Drop already-processed ids and trivial titles, sort oldest first, cap
5. Snapshot the vault index
6. Per session: dedupe, extract, threshold, write notes, advance watermark
7. Digest every date with 2+ processed sessions
8. Persist the watermark, write runs/<stamp>.json, optionally git commit
9. Release the lock

Exit codes: 0 success or nothing to do, 1 lock contention, 2 fatal error.
"""
import argparse
import logging
import sys
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .common import detect_session_type, is_trivial_title, iso_timestamp, now_ms, write_json_atomic
from .config import ConfigError, PipelineConfig, load_config
from .dedup import VaultIndex, build_vault_index, is_duplicate_session
from .discovery import DiscoveryAdapter, default_adapters
from .extract import extract_knowledge, parse_json_object
from .git_ops import auto_commit
from .llm import Summarizer, SummarizerError, Throttle, build_summarizer
from .lock import LockHeldError, acquire_lock, release_lock
from .models import DiscoveredSession, ExtractionResult
from .notes import (
    WriteOutcome,
    digest_fallback_narrative,
    session_note_date,
    write_digest_note,
    write_knowledge_notes,
    write_session_note,
)
from .prompts import build_digest_prompt
from .sanitize import sanitize_text
from .transcript import first_user_message, read_transcript
from .watermark import (
    ensure_sources,
    init_watermark,
    mark_processed,
    read_watermark,
    write_watermark,
)

logger = logging.getLogger("knowledge-pipeline.daily")

EXIT_OK = 0
EXIT_LOCKED = 1
EXIT_FATAL = 2

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_BELOW_THRESHOLD = "below_threshold"
OUTCOME_WRITTEN = "written"


@dataclass
class SessionOutcome:
    status: str
    extraction: Optional[ExtractionResult] = None
    session_note: Optional[WriteOutcome] = None
    knowledge_notes: List[WriteOutcome] = field(default_factory=list)


@dataclass
class RunSummary:
    started_at: str
    dry_run: bool = False
    finished_at: str = ""
    discovered: int = 0
    filtered: int = 0
    deferred: int = 0
    processed: int = 0
    duplicates: int = 0
    below_threshold: int = 0
    session_notes: int = 0
    knowledge_notes: int = 0
    digests: int = 0
    notes: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    summary_path: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("summary_path")
        return data


def process_session(session: DiscoveredSession, config: PipelineConfig, index: VaultIndex,
                    summarizer: Optional[Summarizer],
                    throttle: Optional[Throttle] = None) -> SessionOutcome:
    """Dedupe, extract and write notes for one session.

    Exceptions propagate; callers decide whether they are per-item or fatal.
    """
    if is_duplicate_session(session.id, index):
        logger.info("Session %s already in vault, skipping", session.id)
        return SessionOutcome(OUTCOME_DUPLICATE)

    messages = read_transcript(session)
    extraction = extract_knowledge(session, messages, summarizer, config, throttle)

    if extraction.significance < config.significance_threshold:
        logger.info("Session %s below significance threshold (%.2f < %.2f)",
                    session.id, extraction.significance, config.significance_threshold)
        return SessionOutcome(OUTCOME_BELOW_THRESHOLD, extraction)

    session_type = detect_session_type(f"{session.title}\n{first_user_message(messages) or ''}")
    note = write_session_note(config.vault_path, session, extraction, session_type,
                              dry_run=config.dry_run, home=config.home)
    knowledge = write_knowledge_notes(
        config.vault_path, extraction, session, note, index,
        config.knowledge_confidence, dry_run=config.dry_run, home=config.home,
    )
    return SessionOutcome(OUTCOME_WRITTEN, extraction, note, knowledge)


def discover_candidates(adapters: Sequence[DiscoveryAdapter], state, summary: RunSummary,
                        max_sessions: int) -> List[DiscoveredSession]:
    """Run every adapter from its source's mark and filter to new, non-trivial sessions."""
    processed_ids = state.processed_ids()
    candidates = []
    for adapter in adapters:
        since = state.sources[adapter.source].last_processed_timestamp
        found = adapter.discover(since)
        summary.discovered += len(found)
        for session in found:
            if session.id in processed_ids or is_trivial_title(session.title):
                summary.filtered += 1
                continue
            candidates.append(session)

    candidates.sort(key=lambda s: s.created_at)
    if len(candidates) > max_sessions:
        summary.deferred = len(candidates) - max_sessions
        logger.info("Capped at %d sessions (%d deferred)", max_sessions, summary.deferred)
        candidates = candidates[:max_sessions]
    return candidates


def synthesize_digest(date: str, entries: List[Dict], config: PipelineConfig,
                      summarizer: Optional[Summarizer],
                      throttle: Optional[Throttle] = None) -> Dict:
    """Ask the summarizer for a cross-session digest, with a fixed fallback narrative."""
    fallback = {"narrative": digest_fallback_narrative(date, len(entries)),
                "themes": [], "connections": [], "unresolved_items": []}
    if config.dry_run or summarizer is None:
        return fallback

    prompt = build_digest_prompt(date, entries, home=config.home)
    if throttle is not None:
        throttle.wait()
    try:
        raw = summarizer.summarize(prompt, config.llm_timeout_s)
    except SummarizerError as e:
        logger.warning("Digest synthesis failed for %s: %s", date, e)
        return fallback

    parsed = parse_json_object(raw)
    if parsed is None:
        logger.warning("Digest response for %s was not a JSON object", date)
        return fallback

    def str_list(value):
        return [str(v) for v in value if str(v).strip()] if isinstance(value, list) else []

    return {
        "narrative": str(parsed.get("narrative") or "") or fallback["narrative"],
        "themes": str_list(parsed.get("themes")),
        "connections": str_list(parsed.get("connections")),
        "unresolved_items": str_list(parsed.get("unresolved_items")),
    }


def write_run_summary(state_dir: Path, summary: RunSummary, when: Optional[datetime] = None) -> Path:
    stamp = (when or datetime.now()).strftime("%Y-%m-%d_%H%M%S")
    path = Path(state_dir) / "runs" / f"{stamp}.json"
    write_json_atomic(path, summary.to_dict())
    return path


def run_pipeline(config: PipelineConfig,
                 adapters: Optional[Sequence[DiscoveryAdapter]] = None,
                 summarizer: Optional[Summarizer] = None,
                 now: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep) -> RunSummary:
    """Run one batch extraction pass.

    Raises:
        LockHeldError: If another run holds the lock
    """
    summary = RunSummary(started_at=iso_timestamp(), dry_run=config.dry_run)
    if not config.vault_path.is_dir():
        logger.info("Vault not found at %s, nothing to do", config.vault_path)
        summary.finished_at = iso_timestamp()
        return summary

    state_dir = config.state_dir
    if not acquire_lock(state_dir):
        raise LockHeldError(f"pipeline lock in {state_dir} is held by another process")

    try:
        adapters = list(adapters) if adapters is not None else default_adapters(config)
        sources = [a.source for a in adapters]
        now = now if now is not None else now_ms()

        state = read_watermark(state_dir)
        if state is None:
            logger.info("No watermark found, backfilling %d day(s)", config.backfill_days)
            state = init_watermark(sources, config.backfill_days, now)
        ensure_sources(state, sources, config.backfill_days, now)

        candidates = discover_candidates(adapters, state, summary, config.max_sessions)
        logger.info("Discovered %d, filtered %d, processing %d",
                    summary.discovered, summary.filtered, len(candidates))

        index = build_vault_index(config.vault_path)
        if summarizer is None and not config.dry_run and candidates:
            summarizer = build_summarizer(config)
        throttle = Throttle(config.llm_delay_ms, sleep=sleep)

        by_date: Dict[str, List[Dict]] = defaultdict(list)
        for session in candidates:
            try:
                outcome = process_session(session, config, index, summarizer, throttle)
            except Exception as e:
                logger.exception("Error processing session %s", session.id)
                summary.errors.append(f"{session.source}/{session.id}: {e}")
            else:
                summary.processed += 1
                if outcome.status == OUTCOME_DUPLICATE:
                    summary.duplicates += 1
                elif outcome.status == OUTCOME_BELOW_THRESHOLD:
                    summary.below_threshold += 1
                else:
                    summary.session_notes += 1
                    summary.knowledge_notes += len(outcome.knowledge_notes)
                    summary.notes.append(str(outcome.session_note))
                    summary.notes.extend(str(k) for k in outcome.knowledge_notes)
                    if outcome.session_note.written:
                        state.total_notes_created += 1
                        state.total_knowledge_extracted += sum(1 for k in outcome.knowledge_notes if k.written)
                    by_date[session_note_date(session)].append({
                        "title": sanitize_text(session.title, config.home),
                        "summary": sanitize_text(outcome.extraction.summary_line(), config.home),
                        "domain": session.domain,
                        "project": sanitize_text(session.project, config.home),
                        "note": outcome.session_note.link_target,
                    })
            mark_processed(state, session.source, session.id, session.created_at, config.backfill_days)
            if not config.dry_run:
                write_watermark(state_dir, state)

        for date, entries in sorted(by_date.items()):
            if len(entries) < 2:
                continue
            try:
                digest = synthesize_digest(date, entries, config, summarizer, throttle)
                outcome = write_digest_note(config.vault_path, date, entries, digest, config.dry_run)
            except Exception as e:
                logger.exception("Error writing digest for %s", date)
                summary.errors.append(f"digest {date}: {e}")
                continue
            summary.digests += 1
            summary.notes.append(str(outcome))
            if outcome.written:
                state.total_notes_created += 1

        if not config.dry_run:
            write_watermark(state_dir, state)

        summary.finished_at = iso_timestamp()
        summary.summary_path = str(write_run_summary(state_dir, summary))

        if (config.auto_commit and not config.dry_run
                and (summary.session_notes or summary.knowledge_notes or summary.digests)):
            result = auto_commit(config.vault_path,
                                 f"pipeline: daily extraction {datetime.now().strftime('%Y-%m-%d')}")
            if not result["success"]:
                logger.warning("Auto-commit failed: %s", result.get("error"))
                summary.errors.append(f"auto-commit: {result.get('error')}")

        logger.info(
            "Pipeline complete: discovered=%d filtered=%d processed=%d duplicates=%d "
            "below_threshold=%d session_notes=%d knowledge_notes=%d digests=%d errors=%d",
            summary.discovered, summary.filtered, summary.processed, summary.duplicates,
            summary.below_threshold, summary.session_notes, summary.knowledge_notes,
            summary.digests, len(summary.errors),
        )
        return summary
    finally:
        release_lock(state_dir)


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-pipeline-daily",
        description="Extract knowledge from new AI coding sessions into the vault.",
    )
    parser.add_argument("--vault", type=Path, help="Vault root (overrides OBSIDIAN_VAULT)")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be written")
    parser.add_argument("--backfill-days", type=int, help="Days to look back on first run")
    parser.add_argument("--max-sessions", type=int, help="Maximum sessions to process")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
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
    if args.backfill_days is not None:
        overrides["backfill_days"] = args.backfill_days
    if args.max_sessions is not None:
        overrides["max_sessions"] = args.max_sessions
    config = config.with_overrides(**overrides)
    setup_logging(config.debug)

    try:
        summary = run_pipeline(config)
    except LockHeldError as e:
        logger.info("%s, exiting", e)
        return EXIT_LOCKED
    except Exception:
        logger.exception("Fatal pipeline error")
        return EXIT_FATAL

    if summary.summary_path:
        logger.info("Run summary: %s", summary.summary_path)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
