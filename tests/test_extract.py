"""Tests for extract.py: response parsing and the heuristic fallback ladder."""
import pytest

from knowledge_pipeline.extract import (
    HEURISTIC_DECISION_CONFIDENCE,
    HEURISTIC_SIGNIFICANCE,
    ParseFailure,
    ParseOk,
    extract_knowledge,
    heuristic_extraction,
    parse_extraction,
    parse_json_object,
)
from knowledge_pipeline.llm import SummarizerError, Throttle
from knowledge_pipeline.models import (
    ENGINE_HEURISTIC,
    ENGINE_HEURISTIC_EMPTY,
    ENGINE_HEURISTIC_LLM_ERROR,
    ENGINE_HEURISTIC_PARSE_FAIL,
    ENGINE_LLM,
    DiscoveredSession,
    Message,
)
from tests.helpers import FakeSummarizer, llm_response


@pytest.fixture
def session():
    return DiscoveredSession(id="abc", source="claude-code", title="Refactor job queue",
                             created_at=1, last_activity_at=2, domain="work", project="api")


@pytest.fixture
def messages():
    return [
        Message("user", "Refactor the job queue to use atomic renames"),
        Message("assistant", "Sure, starting with claim_next_job."),
        Message("user", "Also add backoff"),
        Message("assistant", "Backoff added."),
    ]


# ──────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────


class TestParseExtraction:
    """Tests for parse_extraction()."""

    def test_valid_response(self):
        result = parse_extraction(llm_response())
        assert isinstance(result, ParseOk)
        assert result.data["significance"] == 0.8
        assert result.data["key_decisions"][0]["decision"] == "Use os.rename for job claims"

    def test_wrapped_in_prose(self):
        """Text around the outermost braces is ignored."""
        result = parse_extraction("Here you go:\n```json\n" + llm_response() + "\n```\nDone.")
        assert isinstance(result, ParseOk)

    def test_no_json(self):
        assert isinstance(parse_extraction("I cannot help with that."), ParseFailure)

    def test_invalid_json(self):
        assert isinstance(parse_extraction("{executive_summary: nope}"), ParseFailure)

    def test_missing_required_fields(self):
        """executive_summary must be a list and digest a string."""
        assert isinstance(parse_extraction('{"digest": "x"}'), ParseFailure)
        assert isinstance(parse_extraction('{"executive_summary": "x", "digest": "y"}'), ParseFailure)
        assert isinstance(parse_extraction('{"executive_summary": []}'), ParseFailure)

    def test_coercion(self):
        """Bad items are dropped, confidence and significance clamped."""
        raw = llm_response(
            key_decisions=[{"decision": "A", "confidence": 7}, "junk", {"rationale": "no decision"}],
            significance=-3,
            action_items="not a list",
        )
        data = parse_extraction(raw).data
        assert data["key_decisions"] == [{"decision": "A", "rationale": "", "confidence": 1.0}]
        assert data["significance"] == 0.0
        assert data["action_items"] == []

    def test_non_numeric_significance_defaults(self):
        data = parse_extraction(llm_response(significance="high")).data
        assert data["significance"] == 0.5


class TestParseJsonObject:
    """Tests for parse_json_object()."""

    def test_object(self):
        assert parse_json_object('x {"a": 1} y') == {"a": 1}

    def test_rejects_non_object(self):
        assert parse_json_object("nothing") is None
        assert parse_json_object("{bad}") is None


# ──────────────────────────────────────────────
# Heuristic
# ──────────────────────────────────────────────


class TestHeuristicExtraction:
    """Tests for heuristic_extraction()."""

    def test_empty_transcript(self, session):
        result = heuristic_extraction(session, [], ENGINE_HEURISTIC_EMPTY)
        assert result.engine == ENGINE_HEURISTIC_EMPTY
        assert result.significance == HEURISTIC_SIGNIFICANCE
        assert len(result.executive_summary) == 3
        assert result.key_decisions == []
        assert result.patterns == [] and result.learnings == []

    def test_with_messages(self, session, messages):
        result = heuristic_extraction(session, messages)
        assert result.engine == ENGINE_HEURISTIC
        assert "4 messages (2 user, 2 assistant)" in result.executive_summary[0]
        assert result.executive_summary[1].startswith("Started with: Refactor the job queue")
        assert result.executive_summary[2] == "Ended with: Backoff added."
        assert len(result.digest) <= 600

    def test_placeholder_decision_below_knowledge_threshold(self, session, messages):
        """The single placeholder decision never reaches the 0.75 knowledge cut."""
        result = heuristic_extraction(session, messages)
        assert len(result.key_decisions) == 1
        assert result.key_decisions[0]["confidence"] == HEURISTIC_DECISION_CONFIDENCE
        assert HEURISTIC_DECISION_CONFIDENCE < 0.75

    def test_secrets_and_home_sanitized(self, session, make_config, home):
        """Heuristic text goes through the same redaction as LLM prompts."""
        messages = [Message("user", f"cat {home}/secrets.txt token=abc123def")]
        result = heuristic_extraction(session, messages, config=make_config())
        text = " ".join(result.executive_summary) + result.digest
        assert str(home) not in text
        assert "abc123def" not in text


# ──────────────────────────────────────────────
# extract_knowledge
# ──────────────────────────────────────────────


class TestExtractKnowledge:
    """Tests for extract_knowledge() engine selection."""

    def test_empty_transcript_skips_llm(self, session, make_config):
        summarizer = FakeSummarizer([llm_response()])
        result = extract_knowledge(session, [], summarizer, make_config())
        assert result.engine == ENGINE_HEURISTIC_EMPTY
        assert result.significance == 0.3
        assert summarizer.prompts == []

    def test_dry_run_skips_llm(self, session, messages, make_config):
        summarizer = FakeSummarizer([llm_response()])
        result = extract_knowledge(session, messages, summarizer, make_config(dry_run=True))
        assert result.engine == ENGINE_HEURISTIC
        assert summarizer.prompts == []

    def test_llm_success(self, session, messages, make_config):
        summarizer = FakeSummarizer([llm_response()], model="claude-haiku")
        result = extract_knowledge(session, messages, summarizer, make_config())
        assert result.engine == ENGINE_LLM
        assert result.model == "claude-haiku"
        assert result.significance == 0.8
        assert result.action_items == ["Add a stale-job sweeper"]

    def test_prompt_contains_session_context(self, session, messages, make_config):
        summarizer = FakeSummarizer([llm_response()])
        extract_knowledge(session, messages, summarizer, make_config())
        prompt = summarizer.prompts[0]
        assert "Refactor job queue" in prompt
        assert "[user] Refactor the job queue" in prompt

    def test_llm_error_falls_back(self, session, messages, make_config):
        summarizer = FakeSummarizer([SummarizerError("timed out")])
        result = extract_knowledge(session, messages, summarizer, make_config())
        assert result.engine == ENGINE_HEURISTIC_LLM_ERROR
        assert result.significance == HEURISTIC_SIGNIFICANCE

    def test_unexpected_transport_exception_falls_back(self, session, messages, make_config):
        """Any exception from the transport ends in the heuristic, never propagates."""
        summarizer = FakeSummarizer([TypeError("unexpected keyword argument 'temperature'")])
        result = extract_knowledge(session, messages, summarizer, make_config())
        assert result.engine == ENGINE_HEURISTIC_LLM_ERROR

    def test_parse_failure_falls_back(self, session, messages, make_config):
        summarizer = FakeSummarizer(["Sorry, here is prose instead of JSON."])
        result = extract_knowledge(session, messages, summarizer, make_config())
        assert result.engine == ENGINE_HEURISTIC_PARSE_FAIL

    def test_throttle_called_before_each_call(self, session, messages, make_config):
        """The throttle delays the second consecutive call."""
        sleeps = []
        clock = iter([0.0, 0.1, 0.1])
        throttle = Throttle(1000, sleep=sleeps.append, clock=lambda: next(clock))
        summarizer = FakeSummarizer([llm_response(), llm_response()])
        config = make_config()
        extract_knowledge(session, messages, summarizer, config, throttle)
        extract_knowledge(session, messages, summarizer, config, throttle)
        assert sleeps == [pytest.approx(0.9)]
