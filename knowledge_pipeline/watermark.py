"""Per-source high-water mark for incremental extraction.

File: <state_dir>/watermark.json

    {
      "version": 1,
      "last_run_at": "2026-03-01T06:00:00Z",
      "sources": {
        "claude-code": {"last_processed_timestamp": 1772344800000,
                        "processed_session_ids": ["...", ...]},
        ...
      },
      "stats": {"total_sessions_processed": 0, "total_notes_created": 0,
                "total_knowledge_extracted": 0}
    }

last_processed_timestamp never moves backwards. processed_session_ids is a
FIFO window of the most recent MAX_PROCESSED_IDS ids.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .common import iso_timestamp, now_ms, write_json_atomic

logger = logging.getLogger("knowledge-pipeline.watermark")

WATERMARK_FILE = "watermark.json"
WATERMARK_VERSION = 1
MAX_PROCESSED_IDS = 200
DAY_MS = 86_400_000


@dataclass
class SourceWatermark:
    last_processed_timestamp: int
    processed_session_ids: List[str] = field(default_factory=list)


@dataclass
class WatermarkState:
    sources: Dict[str, SourceWatermark] = field(default_factory=dict)
    last_run_at: str = ""
    total_sessions_processed: int = 0
    total_notes_created: int = 0
    total_knowledge_extracted: int = 0

    def processed_ids(self) -> set:
        """Union of recently processed ids across all sources."""
        ids = set()
        for source in self.sources.values():
            ids.update(source.processed_session_ids)
        return ids

    def to_dict(self) -> dict:
        return {
            "version": WATERMARK_VERSION,
            "last_run_at": self.last_run_at,
            "sources": {
                name: {
                    "last_processed_timestamp": src.last_processed_timestamp,
                    "processed_session_ids": list(src.processed_session_ids),
                }
                for name, src in self.sources.items()
            },
            "stats": {
                "total_sessions_processed": self.total_sessions_processed,
                "total_notes_created": self.total_notes_created,
                "total_knowledge_extracted": self.total_knowledge_extracted,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WatermarkState":
        """Build from parsed JSON. Raises ValueError/TypeError/KeyError on bad shape."""
        if data.get("version") != WATERMARK_VERSION or not isinstance(data.get("sources"), dict):
            raise ValueError("unsupported watermark schema")
        sources = {}
        for name, raw in data["sources"].items():
            ids = raw.get("processed_session_ids", [])
            if not isinstance(ids, list):
                raise TypeError(f"processed_session_ids for {name} is not a list")
            sources[name] = SourceWatermark(
                last_processed_timestamp=int(raw["last_processed_timestamp"]),
                processed_session_ids=[str(i) for i in ids][-MAX_PROCESSED_IDS:],
            )
        stats = data.get("stats") or {}
        return cls(
            sources=sources,
            last_run_at=str(data.get("last_run_at", "")),
            total_sessions_processed=int(stats.get("total_sessions_processed", 0)),
            total_notes_created=int(stats.get("total_notes_created", 0)),
            total_knowledge_extracted=int(stats.get("total_knowledge_extracted", 0)),
        )


def backfill_cutoff(backfill_days: int, now: Optional[int] = None) -> int:
    return (now if now is not None else now_ms()) - backfill_days * DAY_MS


def init_watermark(sources: Iterable[str], backfill_days: int,
                   now: Optional[int] = None) -> WatermarkState:
    """Fresh state with every source starting backfill_days ago."""
    cutoff = backfill_cutoff(backfill_days, now)
    return WatermarkState(
        sources={name: SourceWatermark(last_processed_timestamp=cutoff) for name in sources},
    )


def ensure_sources(state: WatermarkState, sources: Iterable[str], backfill_days: int,
                   now: Optional[int] = None) -> WatermarkState:
    """Add records for sources the stored state does not know yet."""
    cutoff = backfill_cutoff(backfill_days, now)
    for name in sources:
        if name not in state.sources:
            state.sources[name] = SourceWatermark(last_processed_timestamp=cutoff)
    return state


def read_watermark(state_dir: Path) -> Optional[WatermarkState]:
    """Read the stored watermark.

    Returns:
        The state, or None if the file is missing or unreadable
    """
    watermark_file = Path(state_dir) / WATERMARK_FILE
    try:
        if not watermark_file.exists():
            return None
        with open(watermark_file) as f:
            data = json.load(f)
        return WatermarkState.from_dict(data)
    except (json.JSONDecodeError, ValueError, TypeError, KeyError, AttributeError, OSError) as e:
        logger.warning("Ignoring unreadable watermark %s: %s", watermark_file, e)
        return None


def mark_processed(state: WatermarkState, source: str, session_id: str,
                   created_at: int, backfill_days: int = 1) -> WatermarkState:
    """Record a session as handled and advance the source's mark if it is newer."""
    if source not in state.sources:
        ensure_sources(state, [source], backfill_days)
    record = state.sources[source]

    if session_id in record.processed_session_ids:
        record.processed_session_ids.remove(session_id)
    record.processed_session_ids.append(session_id)
    if len(record.processed_session_ids) > MAX_PROCESSED_IDS:
        record.processed_session_ids = record.processed_session_ids[-MAX_PROCESSED_IDS:]

    if created_at > record.last_processed_timestamp:
        record.last_processed_timestamp = created_at

    state.total_sessions_processed += 1
    return state


def write_watermark(state_dir: Path, state: WatermarkState) -> None:
    """Atomically write the watermark and stamp last_run_at."""
    state_dir = Path(state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    state.last_run_at = iso_timestamp()
    write_json_atomic(state_dir / WATERMARK_FILE, state.to_dict())

