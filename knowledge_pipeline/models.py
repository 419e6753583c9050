"""Shared data types for the extraction pipeline."""
from dataclasses import dataclass, field
from typing import List, Optional

SOURCE_CLAUDE_CODE = "claude-code"
SOURCE_CLAUDE_DESKTOP = "claude-desktop"
ALL_SOURCES = (SOURCE_CLAUDE_CODE, SOURCE_CLAUDE_DESKTOP)

ENGINE_LLM = "llm-native"
ENGINE_HEURISTIC = "heuristic"
ENGINE_HEURISTIC_EMPTY = "heuristic-empty"
ENGINE_HEURISTIC_PARSE_FAIL = "heuristic-parse-fail"
ENGINE_HEURISTIC_LLM_ERROR = "heuristic-llm-error"


@dataclass
class Message:
    """One transcript message in the uniform shape all readers produce."""
    role: str
    content: str
    timestamp: Optional[str] = None
    model: Optional[str] = None


@dataclass
class DiscoveredSession:
    """A session found by a discovery adapter.

    last_activity_at is raised to created_at when a source reports it lower.
    """
    id: str
    source: str
    title: str
    created_at: int
    last_activity_at: int
    domain: str = "personal"
    project: str = ""
    transcript_path: Optional[str] = None
    model: str = ""
    cwd: str = ""
    subagent_paths: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.last_activity_at < self.created_at:
            self.last_activity_at = self.created_at


@dataclass
class ExtractionResult:
    """Structured knowledge extracted from one session."""
    executive_summary: List[str]
    digest: str
    engine: str
    significance: float = 0.5
    model: str = ""
    key_decisions: List[dict] = field(default_factory=list)
    patterns: List[dict] = field(default_factory=list)
    learnings: List[dict] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)

    @property
    def is_heuristic(self) -> bool:
        return self.engine.startswith(ENGINE_HEURISTIC)

    def summary_line(self) -> str:
        """One-line summary used for notes and duplicate detection."""
        return self.digest or " ".join(self.executive_summary)

    def to_dict(self) -> dict:
        return {
            "executive_summary": list(self.executive_summary),
            "key_decisions": list(self.key_decisions),
            "digest": self.digest,
            "patterns": list(self.patterns),
            "learnings": list(self.learnings),
            "action_items": list(self.action_items),
            "significance": self.significance,
            "engine": self.engine,
            "model": self.model,
        }
