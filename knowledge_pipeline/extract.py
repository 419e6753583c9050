"""Knowledge extraction with a heuristic fallback that never fails.

Flow per session:
1. Empty transcript -> heuristic ("heuristic-empty")
2. Dry run -> heuristic ("heuristic"), no external call
3. Chunk, build prompt, call the summarizer under a timeout
4. Decode the first-{ .. last-} span and validate its shape
   - valid -> "llm-native"
   - invalid -> heuristic ("heuristic-parse-fail")
   - SummarizerError -> heuristic ("heuristic-llm-error")

The engine tag is what re-enrichment later uses to find heuristic notes.
"""
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from .chunker import chunk_transcript, format_messages
from .common import detect_session_type
from .config import PipelineConfig
from .llm import Summarizer, SummarizerError, Throttle
from .models import (
    ENGINE_HEURISTIC,
    ENGINE_HEURISTIC_EMPTY,
    ENGINE_HEURISTIC_LLM_ERROR,
    ENGINE_HEURISTIC_PARSE_FAIL,
    ENGINE_LLM,
    DiscoveredSession,
    ExtractionResult,
    Message,
)
from .prompts import build_extraction_prompt
from .sanitize import sanitize_text
from .transcript import first_user_message

logger = logging.getLogger("knowledge-pipeline.extract")

HEURISTIC_SIGNIFICANCE = 0.3
HEURISTIC_DECISION_CONFIDENCE = 0.45
DEFAULT_SIGNIFICANCE = 0.5
DIGEST_FALLBACK_CHARS = 600
_SNIPPET_CHARS = 160


@dataclass
class ParseOk:
    data: dict


@dataclass
class ParseFailure:
    reason: str


ParseResult = Union[ParseOk, ParseFailure]


def _clamp(value, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


def _json_span(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def _coerce_items(raw, text_keys: Sequence[str]) -> List[dict]:
    """Keep dict items, coerce their text fields to str and clamp confidence."""
    if not isinstance(raw, list):
        return []
    items = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        coerced = {key: str(item.get(key) or "").strip() for key in text_keys}
        if not coerced[text_keys[0]]:
            continue
        coerced["confidence"] = _clamp(item.get("confidence"), 0.0)
        items.append(coerced)
    return items


def parse_json_object(text: str) -> Optional[dict]:
    """Decode the first-{ .. last-} span of text as a JSON object, or None."""
    span = _json_span(text or "")
    if span is None:
        return None
    try:
        data = json.loads(span)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def parse_extraction(text: str) -> ParseResult:
    """Decode and validate an extraction response.

    Requires a JSON object with an `executive_summary` list and a `digest`
    string. Everything else is optional and coerced to the expected shape.
    """
    span = _json_span(text or "")
    if span is None:
        return ParseFailure("no JSON object in response")
    try:
        data = json.loads(span)
    except (json.JSONDecodeError, ValueError) as e:
        return ParseFailure(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return ParseFailure("top-level JSON is not an object")
    if not isinstance(data.get("executive_summary"), list):
        return ParseFailure("executive_summary is missing or not a list")
    if not isinstance(data.get("digest"), str):
        return ParseFailure("digest is missing or not a string")

    action_items = data.get("action_items")
    return ParseOk({
        "executive_summary": [str(s).strip() for s in data["executive_summary"] if str(s).strip()],
        "digest": data["digest"].strip(),
        "key_decisions": _coerce_items(data.get("key_decisions"), ("decision", "rationale")),
        "patterns": _coerce_items(data.get("patterns"), ("title", "summary")),
        "learnings": _coerce_items(data.get("learnings"), ("title", "summary")),
        "action_items": [str(a).strip() for a in action_items if str(a).strip()]
        if isinstance(action_items, list) else [],
        "significance": _clamp(data.get("significance"), DEFAULT_SIGNIFICANCE),
    })


def _snippet(text: str) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= _SNIPPET_CHARS else flat[:_SNIPPET_CHARS - 3] + "..."


def heuristic_extraction(session: DiscoveredSession, messages: Sequence[Message],
                         engine: str = ENGINE_HEURISTIC,
                         config: Optional[PipelineConfig] = None) -> ExtractionResult:
    """Build an extraction result without any external call."""
    home = config.home if config else None
    title = sanitize_text(session.title, home) or "Untitled session"

    if not messages:
        return ExtractionResult(
            executive_summary=[
                title,
                "No transcript content was available for this session.",
                "Summary generated without LLM analysis.",
            ],
            digest=f"{title}. No transcript content was available for this session.",
            engine=engine,
            significance=HEURISTIC_SIGNIFICANCE,
        )

    user_count = sum(1 for m in messages if m.role == "user")
    assistant_count = sum(1 for m in messages if m.role == "assistant")
    first = first_user_message(messages) or messages[0].content
    last = messages[-1].content

    return ExtractionResult(
        executive_summary=[
            f"{title}: {len(messages)} messages ({user_count} user, {assistant_count} assistant)",
            f"Started with: {_snippet(sanitize_text(first, home))}",
            f"Ended with: {_snippet(sanitize_text(last, home))}",
        ],
        digest=sanitize_text(format_messages(messages), home)[:DIGEST_FALLBACK_CHARS],
        engine=engine,
        significance=HEURISTIC_SIGNIFICANCE,
        key_decisions=[{
            "decision": f"Review session: {title}",
            "rationale": "Heuristic summary only; re-run enrichment for extracted decisions.",
            "confidence": HEURISTIC_DECISION_CONFIDENCE,
        }],
    )


def extract_knowledge(session: DiscoveredSession, messages: Sequence[Message],
                      summarizer: Optional[Summarizer], config: PipelineConfig,
                      throttle: Optional[Throttle] = None) -> ExtractionResult:
    """Turn a transcript into structured knowledge. Never raises for LLM problems."""
    if not messages:
        logger.info("Session %s has no transcript content, using heuristic", session.id)
        return heuristic_extraction(session, messages, ENGINE_HEURISTIC_EMPTY, config)

    if config.dry_run or summarizer is None:
        return heuristic_extraction(session, messages, ENGINE_HEURISTIC, config)

    chunk = chunk_transcript(messages, config.chunk_max_chars)
    first = first_user_message(messages) or ""
    prompt = build_extraction_prompt(
        title=session.title,
        session_type=detect_session_type(f"{session.title}\n{first}"),
        domain=session.domain,
        project=session.project,
        transcript=chunk.text,
        home=config.home,
    )
    logger.debug("Session %s: %d messages chunked with %s strategy (%d chars)",
                 session.id, len(messages), chunk.strategy, len(chunk.text))

    if throttle is not None:
        throttle.wait()
    try:
        response = summarizer.summarize(prompt, config.llm_timeout_s)
    except SummarizerError as e:
        logger.warning("Summarizer failed for %s, using heuristic: %s", session.id, e)
        return heuristic_extraction(session, messages, ENGINE_HEURISTIC_LLM_ERROR, config)
    except Exception as e:
        logger.warning("Summarizer %s raised %s for %s, using heuristic: %s",
                       summarizer.name, type(e).__name__, session.id, e)
        return heuristic_extraction(session, messages, ENGINE_HEURISTIC_LLM_ERROR, config)

    parsed = parse_extraction(response)
    if isinstance(parsed, ParseFailure):
        logger.warning("Unusable summarizer response for %s, using heuristic: %s",
                       session.id, parsed.reason)
        return heuristic_extraction(session, messages, ENGINE_HEURISTIC_PARSE_FAIL, config)

    return ExtractionResult(engine=ENGINE_LLM, model=summarizer.model, **parsed.data)
