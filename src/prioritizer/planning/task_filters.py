"""Shared helpers for classifying tasks by workflow stage, skill, and topic."""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import Iterable, Optional, Pattern, Sequence

WORKFLOW_STAGES: tuple[str, ...] = (
    "research",
    "design",
    "plan",
    "build",
    "test",
    "deploy",
    "launch",
)

WORKFLOW_KEYWORDS: dict[str, tuple[str, ...]] = {
    "research": ("research", "analysis", "analyze", "investigate", "discovery", "interview", "survey"),
    "design": ("design", "mockup", "wireframe", "prototype", "ux", "ui"),
    "plan": ("plan", "roadmap", "spec", "backlog", "groom", "architecture", "scope"),
    "build": ("build", "implement", "develop", "code", "create", "engineer", "integrate", "write"),
    "test": ("test", "qa", "validate", "verify", "quality", "bug", "regression", "review"),
    "deploy": ("deploy", "release", "ship", "rollout", "publish", "handoff", "handover"),
    "launch": ("launch", "go live", "golive", "announce", "marketing push"),
}

SKILL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "design": ("design", "ux", "ui", "prototype", "wireframe", "figma"),
    "frontend": ("frontend", "react", "next", "typescript", "javascript", "ui component"),
    "backend": ("backend", "api", "database", "server", "postgres", "node"),
    "data": ("analytics", "data", "metrics", "sql", "dashboard"),
    "marketing": ("launch", "campaign", "marketing", "go-to-market", "growth", "seo"),
    "qa": ("test", "qa", "quality", "bug", "regression", "verify"),
    "devops": ("deploy", "pipeline", "infrastructure", "devops", "ci", "cd", "kubernetes"),
    "research": ("research", "interview", "discovery", "analysis"),
    "product": ("plan", "strategy", "roadmap", "prioritize"),
    "docs": ("documentation", "docs", "doc", "readme", "guide", "manual"),
}

STOPWORDS: frozenset[str] = frozenset(
    {
        "the", "and", "for", "with", "from", "into", "onto", "that", "this", "these", "those",
        "our", "your", "their", "all", "any", "are", "was", "were", "will", "can", "should",
        "must", "have", "has", "had", "not", "but", "out", "new", "use", "using", "via", "per",
        "task", "tasks", "work", "item", "items", "make", "get", "set", "add", "update",
    }
)

_TOKEN_PATTERN: Pattern[str] = re.compile(r"[a-z0-9]+")


def _keyword_pattern(keyword: str) -> Pattern[str]:
    return re.compile(r"\b" + re.escape(keyword) + r"(?:s|es|ed|ing)?\b")


_STAGE_PATTERNS: dict[str, tuple[Pattern[str], ...]] = {
    stage: tuple(_keyword_pattern(keyword) for keyword in keywords)
    for stage, keywords in WORKFLOW_KEYWORDS.items()
}
_SKILL_PATTERNS: dict[str, tuple[Pattern[str], ...]] = {
    skill: tuple(_keyword_pattern(keyword) for keyword in keywords)
    for skill, keywords in SKILL_KEYWORDS.items()
}


def infer_workflow_stage(text: str | None) -> Optional[str]:
    """Return the first workflow stage whose vocabulary appears in ``text``."""
    lowered = (text or "").strip().lower()
    if not lowered:
        return None
    for stage in WORKFLOW_STAGES:
        if any(pattern.search(lowered) for pattern in _STAGE_PATTERNS[stage]):
            return stage
    return None


def stage_index(stage: Optional[str]) -> Optional[int]:
    if stage is None:
        return None
    try:
        return WORKFLOW_STAGES.index(stage)
    except ValueError:
        return None


def extract_skill_tags(text: str | None) -> set[str]:
    lowered = (text or "").lower()
    return {skill for skill, patterns in _SKILL_PATTERNS.items() if any(p.search(lowered) for p in patterns)}


def tokenize(text: str | None) -> list[str]:
    """Lower-case content tokens longer than two characters, minus stopwords."""
    return [
        token
        for token in _TOKEN_PATTERN.findall((text or "").lower())
        if len(token) > 2 and token not in STOPWORDS
    ]


def dominant_terms(text: str | None, *, limit: int = 5) -> set[str]:
    """Most frequent content terms plus any skill tags the text carries."""
    counts = Counter(tokenize(text))
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    terms = {term for term, _ in ranked[:limit]}
    return terms | extract_skill_tags(text)


def term_similarity(first: Iterable[str], second: Iterable[str]) -> float:
    """Jaccard similarity between two term sets."""
    left, right = set(first), set(second)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def cosine_similarity(first: Sequence[float], second: Sequence[float]) -> float:
    if len(first) != len(second) or not first:
        return 0.0
    dot = sum(a * b for a, b in zip(first, second))
    norm_a = math.sqrt(sum(a * a for a in first))
    norm_b = math.sqrt(sum(b * b for b in second))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def text_matches_terms(text: str | None, terms: Iterable[str]) -> bool:
    """Return True when any of ``terms`` (or its plural) occurs as a word in ``text``."""
    lowered = (text or "").lower()
    for term in terms:
        cleaned = term.strip().lower()
        if cleaned and _keyword_pattern(cleaned).search(lowered):
            return True
    return False
