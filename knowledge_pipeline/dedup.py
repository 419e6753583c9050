"""Vault index and duplicate detection.

The index is a snapshot of Sessions/ and Knowledge/ taken once per run. Notes
written later in the same run are not added to it, so two near-identical
sessions processed in one run are only checked against pre-existing notes.
"""
import logging
import os
import re
from collections import deque
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Dict, Set

from .common import parse_frontmatter_lines

logger = logging.getLogger("knowledge-pipeline.dedup")

DEDUP_JACCARD_THRESHOLD = 0.7

_MAX_DEPTH = 8
_MAX_FILES = 20000
_MAX_FILE_BYTES = 1024 * 1024
_FRONTMATTER_LINES = 20
_INDEXED_TREES = ("Sessions", "Knowledge")

_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}_?")
_COLLISION_SUFFIX_RE = re.compile(r"_\d+$")


@dataclass
class VaultIndex:
    """Snapshot of already-persisted notes."""
    session_ids: Set[str] = field(default_factory=set)
    knowledge_slugs: Set[str] = field(default_factory=set)
    summaries: Dict[str, str] = field(default_factory=dict)
    files_scanned: int = 0


def slug_from_filename(filename: str) -> str:
    """'2026-03-01_use-atomic-rename_2.md' -> 'use-atomic-rename'."""
    stem = filename[:-3] if filename.endswith(".md") else filename
    stem = _DATE_PREFIX_RE.sub("", stem)
    return _COLLISION_SUFFIX_RE.sub("", stem)


def read_frontmatter(path: Path, max_lines: int = _FRONTMATTER_LINES) -> dict:
    """Parse key/value front-matter from the first max_lines of a note."""
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = list(islice(f, max_lines))
    except OSError as e:
        logger.debug("Cannot read %s: %s", path, e)
        return {}
    return parse_frontmatter_lines(lines)


def iter_markdown_files(root: Path, max_depth: int = _MAX_DEPTH,
                        max_files: int = _MAX_FILES):
    """Iteratively walk root yielding .md files, bounded in depth and count.

    Real paths of visited directories are tracked so symlink loops end.
    """
    if not root.is_dir():
        return
    visited = set()
    pending = deque([(root, 0)])
    yielded = 0
    while pending:
        directory, depth = pending.popleft()
        try:
            real = os.path.realpath(directory)
        except OSError:
            continue
        if real in visited:
            continue
        visited.add(real)
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            logger.debug("Cannot list %s: %s", directory, e)
            continue
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir():
                    if depth < max_depth:
                        pending.append((Path(entry.path), depth + 1))
                elif entry.is_file() and entry.name.endswith(".md"):
                    if entry.stat().st_size > _MAX_FILE_BYTES:
                        continue
                    yield Path(entry.path)
                    yielded += 1
                    if yielded >= max_files:
                        logger.warning("Stopped indexing %s after %d files", root, max_files)
                        return
            except OSError:
                continue


def build_vault_index(vault_path: Path) -> VaultIndex:
    """Scan Sessions/ and Knowledge/ into a VaultIndex."""
    index = VaultIndex()
    for tree in _INDEXED_TREES:
        for path in iter_markdown_files(Path(vault_path) / tree):
            index.files_scanned += 1
            meta = read_frontmatter(path)
            summary = meta.get("summary", "")
            if tree == "Sessions":
                session_id = meta.get("session_id")
                if session_id:
                    index.session_ids.add(session_id)
                    if summary:
                        index.summaries[session_id] = summary
            else:
                slug = slug_from_filename(path.name)
                if slug:
                    index.knowledge_slugs.add(slug)
                    if summary:
                        index.summaries[slug] = summary
    logger.info("Vault index: %d files, %d sessions, %d knowledge notes",
                index.files_scanned, len(index.session_ids), len(index.knowledge_slugs))
    return index


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Compute Jaccard word-overlap similarity between two texts.

    Returns:
        Jaccard similarity (0.0-1.0); 1.0 if both are empty, 0.0 if only one is
    """
    words_a = set((text_a or "").lower().split())
    words_b = set((text_b or "").lower().split())
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def is_duplicate_session(session_id: str, index: VaultIndex) -> bool:
    return session_id in index.session_ids


def is_duplicate_knowledge(slug: str, summary: str, index: VaultIndex,
                           threshold: float = DEDUP_JACCARD_THRESHOLD) -> bool:
    """Exact slug match, or Jaccard >= threshold against any indexed summary."""
    if slug and slug in index.knowledge_slugs:
        return True
    for existing in index.summaries.values():
        score = jaccard_similarity(summary, existing)
        if score >= threshold:
            logger.debug("Knowledge %r matched existing summary (jaccard=%.3f)", slug, score)
            return True
    return False
