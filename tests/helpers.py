"""Shared test helpers: timestamps, canned LLM responses, a scripted summarizer."""
import json
from datetime import datetime
from typing import List

from knowledge_pipeline.llm import Summarizer, SummarizerError


def ms(text: str) -> int:
    """Local 'YYYY-MM-DD HH:MM' -> epoch milliseconds."""
    return int(datetime.strptime(text, "%Y-%m-%d %H:%M").timestamp() * 1000)


def llm_response(**overrides) -> str:
    """A well-formed extraction response."""
    data = {
        "executive_summary": ["Moved the queue to atomic renames", "Added retry backoff"],
        "key_decisions": [
            {"decision": "Use os.rename for job claims",
             "rationale": "Atomic on one filesystem", "confidence": 0.9},
        ],
        "digest": "Reworked the job queue so concurrent workers never double-claim.",
        "patterns": [
            {"title": "Claim by rename", "summary": "Rename pending to processing to claim work",
             "confidence": 0.8},
        ],
        "learnings": [
            {"title": "Low confidence idea", "summary": "Probably irrelevant", "confidence": 0.2},
        ],
        "significance": 0.8,
        "action_items": ["Add a stale-job sweeper"],
    }
    data.update(overrides)
    return json.dumps(data)


class FakeSummarizer(Summarizer):
    """Returns queued responses in order. Exceptions in the queue are raised."""

    name = "fake"

    def __init__(self, responses=None, model: str = "fake-model"):
        super().__init__(model)
        self.responses = list(responses or [])
        self.prompts: List[str] = []

    def summarize(self, prompt: str, timeout_s: float) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise SummarizerError("no response queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response
