"""File-backed at-least-once job queue.

Layout under <vault>/.hooks-queue/:
    pending/<id>.json     waiting (or waiting out a retry backoff)
    processing/<id>.json  claimed by a worker
    done/<id>.json        finished
    failed/<id>.json      attempts exhausted, carries "error"
    results/<id>.json     extraction output written by the worker

Claiming is os.rename(pending/x, processing/x). Rename is atomic on one
filesystem, so at most one worker wins a given job; the losers see
FileNotFoundError and move on to the next file.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from .common import iso_timestamp, now_ms, slugify, write_json_atomic

logger = logging.getLogger("knowledge-pipeline.queue")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
QUEUE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_DONE, STATUS_FAILED)
RESULTS_DIR = "results"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 5000
STALE_PROCESSING_MS = 30 * 60 * 1000


@dataclass
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_ms: int = DEFAULT_BACKOFF_MS


@dataclass
class EnrichmentJob:
    id: str
    payload: dict
    target_path: str = ""
    status: str = STATUS_PENDING
    attempts: int = 0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    created_at: str = ""
    updated_at: str = ""
    available_at: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["error"] is None:
            data.pop("error")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EnrichmentJob":
        policy = data.get("retry_policy") or {}
        return cls(
            id=str(data["id"]),
            payload=dict(data.get("payload") or {}),
            target_path=str(data.get("target_path") or ""),
            status=str(data.get("status", STATUS_PENDING)),
            attempts=int(data.get("attempts", 0)),
            retry_policy=RetryPolicy(
                max_attempts=int(policy.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
                backoff_ms=int(policy.get("backoff_ms", DEFAULT_BACKOFF_MS)),
            ),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
            available_at=int(data.get("available_at", 0)),
            error=data.get("error"),
        )


def queue_dirs(queue_dir: Path) -> dict:
    base = Path(queue_dir)
    return {name: base / name for name in QUEUE_STATUSES + (RESULTS_DIR,)}


def ensure_queue_dirs(queue_dir: Path) -> dict:
    dirs = queue_dirs(queue_dir)
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)
    return dirs


def _job_file(directory: Path, job_id: str) -> Path:
    return directory / f"{job_id}.json"


def enqueue_job(queue_dir: Path, payload: dict, target_path: str = "",
                retry_policy: Optional[RetryPolicy] = None,
                now: Optional[int] = None) -> EnrichmentJob:
    """Write a new pending job and return it."""
    dirs = ensure_queue_dirs(queue_dir)
    now = now if now is not None else now_ms()
    base_id = f"{now}-{slugify(str(payload.get('title', '')), 24) or 'job'}"

    job_id = base_id
    counter = 2
    while any(_job_file(dirs[s], job_id).exists() for s in QUEUE_STATUSES):
        job_id = f"{base_id}-{counter}"
        counter += 1

    stamp = iso_timestamp(now)
    job = EnrichmentJob(
        id=job_id,
        payload=payload,
        target_path=target_path,
        retry_policy=retry_policy or RetryPolicy(),
        created_at=stamp,
        updated_at=stamp,
        available_at=now,
    )
    write_json_atomic(_job_file(dirs[STATUS_PENDING], job_id), job.to_dict())
    logger.info("Enqueued job %s", job_id)
    return job


def _read_job(path: Path) -> EnrichmentJob:
    with open(path) as f:
        return EnrichmentJob.from_dict(json.load(f))


def _quarantine(dirs: dict, path: Path, error: str) -> None:
    """Move an unreadable job file to failed/ untouched, recording why in the log."""
    target = dirs[STATUS_FAILED] / path.name
    try:
        os.replace(path, target)
    except OSError as e:
        logger.error("Cannot move corrupt job %s: %s", path, e)
        return
    logger.warning("Moved corrupt job %s to failed: %s", path.name, error)


def claim_next_job(queue_dir: Path, now: Optional[int] = None) -> Optional[EnrichmentJob]:
    """Claim the oldest available pending job, or return None."""
    dirs = ensure_queue_dirs(queue_dir)
    now = now if now is not None else now_ms()

    for source in sorted(dirs[STATUS_PENDING].glob("*.json")):
        try:
            peek = _read_job(source)
        except FileNotFoundError:
            continue
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            _quarantine(dirs, source, str(e))
            continue
        if peek.available_at > now:
            continue

        dest = dirs[STATUS_PROCESSING] / source.name
        try:
            os.rename(source, dest)
        except FileNotFoundError:
            # Another worker claimed it first
            continue

        try:
            job = _read_job(dest)
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            _quarantine(dirs, dest, str(e))
            continue
        job.status = STATUS_PROCESSING
        job.attempts += 1
        job.updated_at = iso_timestamp(now)
        write_json_atomic(dest, job.to_dict())
        logger.info("Claimed job %s (attempt %d/%d)", job.id, job.attempts,
                    job.retry_policy.max_attempts)
        return job
    return None


def finalize_job(queue_dir: Path, job: EnrichmentJob, success: bool,
                 error: Optional[str] = None, now: Optional[int] = None) -> str:
    """Move a processing job to done, back to pending, or to failed.

    Returns:
        The job's new status
    """
    dirs = ensure_queue_dirs(queue_dir)
    now = now if now is not None else now_ms()
    current = _job_file(dirs[STATUS_PROCESSING], job.id)
    job.updated_at = iso_timestamp(now)

    if success:
        job.status = STATUS_DONE
        job.error = None
    elif job.attempts < job.retry_policy.max_attempts:
        job.status = STATUS_PENDING
        job.error = error
        job.available_at = now + job.retry_policy.backoff_ms * job.attempts
    else:
        job.status = STATUS_FAILED
        job.error = error or "unknown error"

    write_json_atomic(_job_file(dirs[job.status], job.id), job.to_dict())
    current.unlink(missing_ok=True)
    logger.info("Job %s -> %s%s", job.id, job.status, f" ({error})" if error else "")
    return job.status


def recover_stale_jobs(queue_dir: Path, stale_ms: int = STALE_PROCESSING_MS,
                       now: Optional[int] = None) -> int:
    """Return processing jobs abandoned by a crashed worker to pending.

    Returns:
        Number of jobs moved back
    """
    dirs = ensure_queue_dirs(queue_dir)
    now = now if now is not None else now_ms()
    recovered = 0
    for path in sorted(dirs[STATUS_PROCESSING].glob("*.json")):
        try:
            age = now - int(path.stat().st_mtime * 1000)
        except FileNotFoundError:
            continue
        if age < stale_ms:
            continue
        try:
            os.rename(path, dirs[STATUS_PENDING] / path.name)
        except FileNotFoundError:
            continue
        recovered += 1
        logger.warning("Recovered stale job %s", path.stem)
    return recovered


def queue_counts(queue_dir: Path) -> dict:
    dirs = queue_dirs(queue_dir)
    return {
        status: len(list(dirs[status].glob("*.json"))) if dirs[status].is_dir() else 0
        for status in QUEUE_STATUSES
    }


def write_job_result(queue_dir: Path, job: EnrichmentJob, result: dict) -> Path:
    dirs = ensure_queue_dirs(queue_dir)
    path = _job_file(dirs[RESULTS_DIR], job.id)
    write_json_atomic(path, result)
    return path
