"""Summarization transports.

The pipeline only needs "send this prompt, get text back within a timeout, or
fail". Three transports provide it:

- AnthropicSummarizer: Anthropic SDK (needs ANTHROPIC_API_KEY)
- ClaudeCliSummarizer: `claude -p` subprocess (reuses the CLI's OAuth login)
- OllamaSummarizer: local Ollama server over HTTP

FallbackSummarizer tries several in order. Every failure surfaces as
SummarizerError so callers have exactly one thing to catch.
"""
import logging
import os
import shutil
import subprocess
import time
from typing import Callable, List, Optional

import anthropic
import httpx

from .config import PipelineConfig

logger = logging.getLogger("knowledge-pipeline.llm")

# Set in the environment of spawned `claude -p` processes so our own capture
# hook exits immediately if it fires inside them.
RECURSION_GUARD_ENV = "KNOWLEDGE_PIPELINE_EXTRACTING"

_MAX_TOKENS = 2000


class SummarizerError(Exception):
    """Raised when a summarization call fails, times out, or returns nothing."""


class Summarizer:
    """Base class for summarization transports."""

    name = "base"

    def __init__(self, model: str):
        self.model = model

    def summarize(self, prompt: str, timeout_s: float) -> str:
        raise NotImplementedError


class AnthropicSummarizer(Summarizer):
    name = "api"

    def __init__(self, model: str, api_key: str):
        super().__init__(model)
        self._api_key = api_key

    def summarize(self, prompt: str, timeout_s: float) -> str:
        try:
            client = anthropic.Anthropic(api_key=self._api_key, timeout=timeout_s, max_retries=0)
            response = client.messages.create(
                model=self.model,
                max_tokens=_MAX_TOKENS,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise SummarizerError(f"Anthropic API call failed: {e}") from e
        except Exception as e:
            raise SummarizerError(f"Anthropic SDK call failed: {type(e).__name__}: {e}") from e

        text = "".join(
            getattr(block, "text", "") for block in response.content
        ).strip()
        if not text:
            raise SummarizerError("Anthropic API returned no text")
        logger.debug("API call used %s in / %s out tokens",
                     response.usage.input_tokens, response.usage.output_tokens)
        return text


class ClaudeCliSummarizer(Summarizer):
    name = "cli"

    def __init__(self, model: str, claude_bin: Optional[str] = None):
        super().__init__(model)
        self._claude_bin = claude_bin

    def summarize(self, prompt: str, timeout_s: float) -> str:
        claude_bin = self._claude_bin or shutil.which("claude")
        if not claude_bin:
            raise SummarizerError("claude binary not found on PATH")

        # --no-session-persistence keeps the spawned session from writing a
        # transcript that discovery would later pick up.
        env = os.environ.copy()
        env[RECURSION_GUARD_ENV] = "1"
        try:
            result = subprocess.run(
                [claude_bin, "-p", "--model", self.model, "--no-session-persistence"],
                input=prompt,
                capture_output=True,
                text=True,
                timeout=timeout_s,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise SummarizerError(f"Claude CLI timed out after {timeout_s:.0f}s") from e
        except OSError as e:
            raise SummarizerError(f"Claude CLI could not start: {e}") from e

        if result.returncode != 0:
            raise SummarizerError(
                f"Claude CLI exited with code {result.returncode}: {result.stderr.strip()[:200]}"
            )
        if not result.stdout.strip():
            raise SummarizerError("Claude CLI returned no output")
        return result.stdout.strip()


class OllamaSummarizer(Summarizer):
    name = "ollama"

    def __init__(self, model: str, host: str):
        super().__init__(model)
        self.host = host.rstrip("/")

    def summarize(self, prompt: str, timeout_s: float) -> str:
        try:
            response = httpx.post(
                f"{self.host}/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False, "format": "json"},
                timeout=timeout_s,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise SummarizerError(f"Ollama timed out after {timeout_s:.0f}s") from e
        except httpx.HTTPStatusError as e:
            raise SummarizerError(f"Ollama returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SummarizerError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise SummarizerError(f"Ollama returned invalid JSON: {e}") from e

        text = str(data.get("response", "")).strip() if isinstance(data, dict) else ""
        if not text:
            raise SummarizerError("Ollama returned an empty response")
        return text


class FallbackSummarizer(Summarizer):
    """Try each transport in order; the first success wins.

    timeout_s bounds the whole chain. Each transport gets an equal share of
    whatever time the earlier ones left unused.
    """

    name = "fallback"

    def __init__(self, summarizers: List[Summarizer],
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(summarizers[0].model if summarizers else "")
        self.summarizers = summarizers
        self.last_used: Optional[Summarizer] = None
        self._clock = clock

    def summarize(self, prompt: str, timeout_s: float) -> str:
        errors = []
        deadline = self._clock() + timeout_s
        for position, summarizer in enumerate(self.summarizers):
            remaining = deadline - self._clock()
            if remaining <= 0:
                errors.append(f"{summarizer.name}: skipped, timeout budget exhausted")
                break
            share = remaining / (len(self.summarizers) - position)
            try:
                text = summarizer.summarize(prompt, share)
            except SummarizerError as e:
                logger.info("Summarizer %s failed: %s", summarizer.name, e)
                errors.append(f"{summarizer.name}: {e}")
                continue
            except Exception as e:
                logger.warning("Summarizer %s raised %s: %s", summarizer.name, type(e).__name__, e)
                errors.append(f"{summarizer.name}: {type(e).__name__}: {e}")
                continue
            self.last_used = summarizer
            self.model = summarizer.model
            return text
        raise SummarizerError("; ".join(errors) or "no summarizer configured")


def build_summarizer(config: PipelineConfig) -> Summarizer:
    """Build the transport chain selected by config.llm_backend.

    auto: API when a key is configured, then the CLI when it is on PATH,
    then the local Ollama server.
    """
    backend = config.llm_backend
    if backend == "api":
        return AnthropicSummarizer(config.llm_model, config.anthropic_api_key)
    if backend == "cli":
        return ClaudeCliSummarizer(config.llm_model)
    if backend == "ollama":
        return OllamaSummarizer(config.ollama_model, config.ollama_host)

    chain: List[Summarizer] = []
    if config.anthropic_api_key:
        chain.append(AnthropicSummarizer(config.llm_model, config.anthropic_api_key))
    claude_bin = shutil.which("claude")
    if claude_bin:
        chain.append(ClaudeCliSummarizer(config.llm_model, claude_bin))
    chain.append(OllamaSummarizer(config.ollama_model, config.ollama_host))
    return FallbackSummarizer(chain)


class Throttle:
    """Enforce a minimum delay between consecutive summarization calls."""

    def __init__(self, delay_ms: int, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.delay_s = max(0, delay_ms) / 1000.0
        self._sleep = sleep
        self._clock = clock
        self._last_call: Optional[float] = None

    def wait(self) -> None:
        """Block until delay_ms has passed since the previous call, then record this one."""
        if self._last_call is not None and self.delay_s > 0:
            remaining = self.delay_s - (self._clock() - self._last_call)
            if remaining > 0:
                self._sleep(remaining)
        self._last_call = self._clock()
