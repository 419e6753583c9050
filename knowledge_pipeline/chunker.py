"""Transcript chunking to fit an LLM prompt budget.

Reduces a message sequence to at most max_chars characters of
"[role] content" lines.

Algorithm (first strategy that fits wins):
1. full: every message
2. head-tail: first 20 + last 40 messages
3. sampled: first 5 + last 10 messages verbatim, plus every Kth user message
   from the middle (K = 1, 2, ... until it fits)
4. truncated: 30% of the budget from the head sample, 60% from the tail
   sample, hard-cut to max_chars
"""
from dataclasses import dataclass
from typing import List, Sequence

from .models import Message

STRATEGY_FULL = "full"
STRATEGY_HEAD_TAIL = "head-tail"
STRATEGY_SAMPLED = "sampled"
STRATEGY_TRUNCATED = "truncated"

DEFAULT_MAX_CHARS = 8000
ELISION = "\n...\n"

_HEAD_TAIL_HEAD = 20
_HEAD_TAIL_TAIL = 40
_SAMPLE_HEAD = 5
_SAMPLE_TAIL = 10
_TRUNCATE_HEAD_SHARE = 0.3
_TRUNCATE_TAIL_SHARE = 0.6


@dataclass
class ChunkResult:
    """Result of chunking a transcript."""
    strategy: str
    text: str


def format_message(message: Message) -> str:
    return f"[{message.role}] {message.content}"


def format_messages(messages: Sequence[Message]) -> str:
    return "\n".join(format_message(m) for m in messages)


def chunk_transcript(messages: Sequence[Message],
                     max_chars: int = DEFAULT_MAX_CHARS) -> ChunkResult:
    """Reduce messages to fit within max_chars.

    Args:
        messages: Transcript messages in order
        max_chars: Character budget (>= 0)

    Returns:
        ChunkResult whose text is never longer than max_chars
    """
    max_chars = max(0, max_chars)
    if not messages:
        return ChunkResult(STRATEGY_FULL, "")

    full_text = format_messages(messages)
    if len(full_text) <= max_chars:
        return ChunkResult(STRATEGY_FULL, full_text)

    head_tail = _try_head_tail(messages, max_chars)
    if head_tail is not None:
        return ChunkResult(STRATEGY_HEAD_TAIL, head_tail)

    head_sample = list(messages[:_SAMPLE_HEAD])
    tail_start = max(len(messages) - _SAMPLE_TAIL, _SAMPLE_HEAD)
    tail_sample = list(messages[tail_start:])

    sampled = _try_sampled(messages[_SAMPLE_HEAD:tail_start], head_sample,
                           tail_sample, max_chars)
    if sampled is not None:
        return ChunkResult(STRATEGY_SAMPLED, sampled)

    head_text = format_messages(head_sample)[:int(max_chars * _TRUNCATE_HEAD_SHARE)]
    tail_text = format_messages(tail_sample)[:int(max_chars * _TRUNCATE_TAIL_SHARE)]
    return ChunkResult(STRATEGY_TRUNCATED, (head_text + ELISION + tail_text)[:max_chars])


def _try_head_tail(messages: Sequence[Message], max_chars: int):
    head_count = min(_HEAD_TAIL_HEAD, len(messages))
    tail_count = min(_HEAD_TAIL_TAIL, len(messages) - head_count)
    if tail_count <= 0:
        return None
    text = (format_messages(messages[:head_count]) + ELISION
            + format_messages(messages[len(messages) - tail_count:]))
    return text if len(text) <= max_chars else None


def _try_sampled(middle: Sequence[Message], head_sample: List[Message],
                 tail_sample: List[Message], max_chars: int):
    user_middle = [m for m in middle if m.role == "user"]
    head_text = format_messages(head_sample)
    tail_text = format_messages(tail_sample)

    for k in range(1, len(user_middle) + 1):
        picked = user_middle[::k]
        candidate = head_text + ELISION + format_messages(picked) + ELISION + tail_text
        if len(candidate) <= max_chars:
            return candidate
    return None
