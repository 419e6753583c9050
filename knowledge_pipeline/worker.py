"""Queue worker: claim one job at a time and run extraction for it.

A job payload describes one captured session:
    {"session_id", "transcript_path", "source", "title"?, "cwd"?,
     "hook_event_name"?, "created_at"?}

Failures go back to pending until retry_policy.max_attempts is reached. An
LLM failure that fell back to the heuristic is retried while attempts remain;
on the last attempt the heuristic result is accepted.
"""
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .common import detect_domain, detect_project, detect_session_type, iso_timestamp, now_ms
from .config import ConfigError, PipelineConfig, load_config
from .daily import setup_logging
from .dedup import build_vault_index, is_duplicate_session
from .discovery import read_transcript_meta
from .extract import extract_knowledge
from .jobqueue import (
    EnrichmentJob,
    claim_next_job,
    finalize_job,
    recover_stale_jobs,
    write_job_result,
)
from .llm import Summarizer, build_summarizer
from .models import ENGINE_HEURISTIC_LLM_ERROR, SOURCE_CLAUDE_CODE, DiscoveredSession
from .notes import WriteOutcome, rewrite_session_note, write_knowledge_notes, write_session_note
from .transcript import first_user_message, read_transcript

logger = logging.getLogger("knowledge-pipeline.worker")

_TITLE_CHARS = 80


class RetryableJobError(Exception):
    """The job should go back to pending if it has attempts left."""


def session_from_payload(payload: dict, config: PipelineConfig) -> DiscoveredSession:
    """Build a DiscoveredSession for a queued capture."""
    transcript_path = payload.get("transcript_path") or ""
    if not transcript_path or not Path(transcript_path).exists():
        raise RetryableJobError(f"transcript not found: {transcript_path or '(none)'}")

    meta = read_transcript_meta(Path(transcript_path))
    cwd = str(payload.get("cwd") or meta["cwd"] or "")
    created_at = int(payload.get("created_at") or meta["last_timestamp"] or now_ms())
    return DiscoveredSession(
        id=str(payload.get("session_id") or Path(transcript_path).stem),
        source=str(payload.get("source") or SOURCE_CLAUDE_CODE),
        title=str(payload.get("title") or "").strip(),
        created_at=created_at,
        last_activity_at=meta["last_timestamp"] or created_at,
        domain=detect_domain(cwd, config.home) if cwd else "personal",
        project=detect_project(cwd or transcript_path, config.home),
        transcript_path=transcript_path,
        model=meta["model"],
        cwd=cwd,
    )


def process_job(job: EnrichmentJob, config: PipelineConfig,
                summarizer: Optional[Summarizer]) -> dict:
    """Run extraction for one job and write its notes and result file.

    Raises:
        RetryableJobError: When the transcript is missing or the LLM failed
            with attempts remaining
    """
    session = session_from_payload(job.payload, config)
    messages = read_transcript(session)
    if not session.title:
        first = first_user_message(messages) or session.id
        session.title = " ".join(first.split())[:_TITLE_CHARS]

    extraction = extract_knowledge(session, messages, summarizer, config)
    if (extraction.engine == ENGINE_HEURISTIC_LLM_ERROR
            and job.attempts < job.retry_policy.max_attempts):
        raise RetryableJobError("summarizer unavailable, will retry")

    result = {
        "job_id": job.id,
        "session_id": session.id,
        "completed_at": iso_timestamp(),
        "extraction": extraction.to_dict(),
        "session_note": None,
        "knowledge_notes": [],
        "status": "written",
    }

    index = build_vault_index(config.vault_path)
    session_type = detect_session_type(f"{session.title}\n{first_user_message(messages) or ''}")
    if job.target_path:
        target = Path(job.target_path)
        if not target.is_absolute():
            target = config.vault_path / target
        if not config.dry_run:
            target.parent.mkdir(parents=True, exist_ok=True)
            rewrite_session_note(target, session, extraction, session_type,
                                 enriched_at=iso_timestamp(), home=config.home)
        note = WriteOutcome(target, written=not config.dry_run)
    elif is_duplicate_session(session.id, index):
        result["status"] = "duplicate"
        write_job_result(config.queue_dir, job, result)
        return result
    elif extraction.significance < config.significance_threshold:
        result["status"] = "below_threshold"
        write_job_result(config.queue_dir, job, result)
        return result
    else:
        note = write_session_note(config.vault_path, session, extraction, session_type,
                                  dry_run=config.dry_run, home=config.home)

    knowledge = write_knowledge_notes(
        config.vault_path, extraction, session, note, index,
        config.knowledge_confidence, dry_run=config.dry_run, home=config.home,
    )
    result["session_note"] = str(note.path)
    result["knowledge_notes"] = [str(k.path) for k in knowledge]
    write_job_result(config.queue_dir, job, result)
    return result


def run_once(config: PipelineConfig, summarizer: Optional[Summarizer]) -> bool:
    """Claim and process a single job. Returns False when the queue had nothing ready."""
    job = claim_next_job(config.queue_dir)
    if job is None:
        return False
    try:
        process_job(job, config, summarizer)
    except RetryableJobError as e:
        finalize_job(config.queue_dir, job, success=False, error=str(e))
    except Exception as e:
        logger.exception("Job %s failed", job.id)
        finalize_job(config.queue_dir, job, success=False, error=str(e) or type(e).__name__)
    else:
        finalize_job(config.queue_dir, job, success=True)
    return True


def run_worker(config: PipelineConfig, stop_event: Optional[threading.Event] = None,
               summarizer: Optional[Summarizer] = None) -> int:
    """Poll the queue until stop_event is set (or once, if not run-forever).

    Returns:
        Number of jobs handled
    """
    stop_event = stop_event or threading.Event()
    if summarizer is None and not config.dry_run:
        summarizer = build_summarizer(config)
    poll_s = max(0, config.queue_poll_ms) / 1000.0

    recovered = recover_stale_jobs(config.queue_dir)
    if recovered:
        logger.info("Recovered %d stale job(s)", recovered)

    handled = 0
    while not stop_event.is_set():
        had_job = run_once(config, summarizer)
        if had_job:
            handled += 1
        if not config.queue_run_forever:
            break
        if not had_job:
            stop_event.wait(poll_s)
    return handled


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="knowledge-pipeline-worker",
                                     description="Process queued session extraction jobs.")
    parser.add_argument("--once", action="store_true", help="Handle at most one job and exit")
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ConfigError as e:
        setup_logging()
        logger.error("Invalid configuration: %s", e)
        return 2
    if args.once:
        config = config.with_overrides(queue_run_forever=False)
    setup_logging(config.debug)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, stopping after current job", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    handled = run_worker(config, stop_event)
    logger.info("Worker exiting after %d job(s)", handled)
    return 0


if __name__ == "__main__":
    sys.exit(main())
