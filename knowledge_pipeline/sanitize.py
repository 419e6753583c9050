"""Secret redaction for prompts and vault notes.

Every string that leaves the machine (LLM prompts) or lands in the vault
(session and knowledge notes) passes through sanitize_text() first: the home
directory is collapsed to '~' and anything that looks like a credential is
replaced with [REDACTED].
"""
import re
from pathlib import Path
from typing import Optional

REDACTED = "[REDACTED]"

# Patterns for common secrets (compiled lazily)
SECRET_PATTERNS = {
    "anthropic_or_openai_key": r"sk-[A-Za-z0-9_-]{10,}",
    "github_token": r"gh[ps]_[A-Za-z0-9_]{20,}",
    "aws_key": r"AKIA[0-9A-Z]{16}",
    "private_key": r"-----BEGIN (RSA|EC|DSA|OPENSSH) PRIVATE KEY-----",
    "bearer_token": r"(?i)Bearer\s+[A-Za-z0-9_.\-]{20,}",
    "api_key_assignment": r"(?i)api[_-]?key\s*[:=]\s*[^\s]+",
    "token_assignment": r"(?i)token\s*[:=]\s*[^\s]+",
    "password_assignment": r"(?i)password\s*[:=]\s*[^\s]+",
}

_compiled: Optional[dict] = None


def _get_compiled() -> dict:
    """Compile patterns once on first use."""
    global _compiled
    if _compiled is None:
        _compiled = {
            name: re.compile(pattern)
            for name, pattern in SECRET_PATTERNS.items()
        }
    return _compiled


def redact(match_text: str, visible_chars: int = 4) -> str:
    """Show first/last N chars, mask middle (for log previews only)."""
    if len(match_text) <= visible_chars * 2:
        return "*" * len(match_text)
    start = match_text[:visible_chars]
    end = match_text[-visible_chars:]
    masked = "*" * min(len(match_text) - visible_chars * 2, 20)
    return f"{start}{masked}{end}"


def sanitize_text(text: Optional[str], home: Optional[Path] = None) -> str:
    """Collapse the home directory to '~' and replace secrets with [REDACTED].

    Args:
        text: Input text (None is treated as empty)
        home: Home directory to collapse (defaults to Path.home())

    Returns:
        Sanitized text
    """
    if not text:
        return ""
    home_str = str(home if home is not None else Path.home())
    out = text.replace(home_str, "~") if home_str not in ("", "/") else text
    for pattern in _get_compiled().values():
        out = pattern.sub(REDACTED, out)
    return out


def scan_for_secrets(content: str) -> list[dict]:
    """Scan content for potential secrets.

    Returns:
        List of detections: [{type, line, redacted_preview}]
    """
    compiled = _get_compiled()
    detections = []
    for line_num, line in enumerate(content.split("\n"), start=1):
        for secret_type, pattern in compiled.items():
            for match in pattern.finditer(line):
                detections.append({
                    "type": secret_type,
                    "line": line_num,
                    "redacted_preview": redact(match.group(0)),
                })
    return detections
