"""Prompt builders for session extraction and daily digest synthesis."""
from pathlib import Path
from typing import List, Optional

from .sanitize import sanitize_text

EXTRACTION_PROMPT = """\
You are extracting structured knowledge from an AI coding session transcript.
Return STRICT JSON only, with no markdown fences and no explanation. Use this exact schema:

{{
  "executive_summary": ["bullet1", "bullet2", "bullet3"],
  "key_decisions": [
    {{"decision": "what was decided", "rationale": "why", "confidence": 0.0}}
  ],
  "digest": "short paragraph summarizing the session (max 120 words)",
  "patterns": [
    {{"title": "pattern name", "summary": "description", "confidence": 0.0}}
  ],
  "learnings": [
    {{"title": "learning title", "summary": "what was learned", "confidence": 0.0}}
  ],
  "significance": 0.0,
  "action_items": ["item1", "item2"]
}}

Session metadata:
- title: {title}
- type: {session_type}
- domain: {domain}
- project: {project}

Transcript:
{transcript}

Rules:
- executive_summary: exactly 3 concise bullets capturing the core work done.
- key_decisions: architectural or design choices made. Empty array if none.
- digest: a readable paragraph under 120 words.
- patterns: reusable approaches or techniques discovered. Empty array if none.
- learnings: lessons learned from what worked or failed. Empty array if none.
- significance: 0.0 (trivial) to 1.0 (highly impactful). Consider scope, novelty, and reusability.
- action_items: concrete next steps identified. Empty array if none.
- confidence: 0.0 to 1.0 for each item. Lower if uncertain.
- Omit sensitive values (API keys, tokens). Focus on durable knowledge.
"""

DIGEST_PROMPT = """\
You are synthesizing a daily knowledge digest from multiple AI coding sessions.
Return STRICT JSON only, with no markdown fences and no explanation. Use this exact schema:

{{
  "narrative": "A cohesive 2-3 paragraph summary of the day's work",
  "themes": ["theme1", "theme2"],
  "connections": ["how session X relates to session Y"],
  "unresolved_items": ["item that needs follow-up"]
}}

Date: {date}

Sessions:
{session_list}

Rules:
- narrative: weave the sessions into a coherent story of the day's progress (150-250 words).
- themes: 2-5 high-level themes that span multiple sessions.
- connections: how sessions relate to each other. Empty array if unrelated.
- unresolved_items: open questions, blockers, or incomplete work. Empty array if none.
- Focus on practical engineering insights, not meta-commentary.
"""


def build_extraction_prompt(title: str, session_type: str, domain: str,
                            project: str, transcript: str,
                            home: Optional[Path] = None) -> str:
    return EXTRACTION_PROMPT.format(
        title=sanitize_text(title, home),
        session_type=session_type,
        domain=domain,
        project=sanitize_text(project or "n/a", home),
        transcript=sanitize_text(transcript, home),
    )


def build_digest_prompt(date: str, sessions: List[dict],
                        home: Optional[Path] = None) -> str:
    """Build the digest prompt.

    Args:
        date: YYYY-MM-DD
        sessions: Dicts with title, summary, domain, project
    """
    lines = []
    for i, s in enumerate(sessions, start=1):
        project = sanitize_text(s.get("project") or "general", home)
        lines.append(
            f'{i}. "{sanitize_text(s.get("title", ""), home)}" '
            f'({s.get("domain", "personal")}/{project}): '
            f'{sanitize_text(s.get("summary", ""), home)}'
        )
    return DIGEST_PROMPT.format(date=date, session_list="\n".join(lines))
