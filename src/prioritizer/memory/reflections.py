"""Reflection storage and interpretation into per-task ranking effects."""

from __future__ import annotations

import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..planning.task_filters import STOPWORDS, text_matches_terms, tokenize
from .schema import (
    DirectiveType,
    EffectKind,
    Reflection,
    ReflectionClassification,
    ReflectionEffect,
    Task,
)

LOGGER = logging.getLogger(__name__)

BLOCK_KEYWORDS: tuple[str, ...] = (
    "block",
    "blocked",
    "cannot",
    "ban",
    "hold",
    "stop",
    "wait",
    "pending",
    "legal",
    "approval",
    "ignore",
    "ignored",
    "don't need",
    "dont need",
    "do not need",
    "no need",
    "unneeded",
    "unnecessary",
    "not necessary",
    "not needed",
    "skip",
    "skipped",
    "exclude",
    "excluded",
    "drop",
    "dropped",
)

DEMOTE_KEYWORDS: tuple[str, ...] = (
    "avoid",
    "later",
    "defer",
    "delay",
    "not now",
    "low energy",
    "tired",
    "busy",
    "no time",
    "minimize",
    "worry less",
    "not urgent",
)

BOOST_KEYWORDS: tuple[str, ...] = (
    "focus",
    "priority",
    "prioritize",
    "prioritized",
    "boost",
    "important",
    "urgent",
    "need",
    "must",
)

DEFAULT_MAGNITUDES: Dict[EffectKind, float] = {
    EffectKind.BLOCKED: 10.0,
    EffectKind.DEMOTED: 2.0,
    EffectKind.BOOSTED: 2.0,
}

_REASONS: Dict[EffectKind, str] = {
    EffectKind.BLOCKED: "Blocked by reflection context",
    EffectKind.DEMOTED: "Deprioritized by reflection context",
    EffectKind.BOOSTED: "Matches reflection focus",
}

_DIRECTIVE_EFFECTS: Dict[DirectiveType, EffectKind] = {
    DirectiveType.NEGATION: EffectKind.BLOCKED,
    DirectiveType.POSITIVE: EffectKind.BOOSTED,
}

# "no docs" negates its subject; "no time" is left to DEMOTE_KEYWORDS.
_NO_SUBJECT = re.compile(r"\bno\s+(?!time\b)[a-z]")

_KEYWORD_TOKENS = frozenset(
    token for phrase in BLOCK_KEYWORDS + DEMOTE_KEYWORDS + BOOST_KEYWORDS for token in tokenize(phrase)
) | frozenset({"don", "dont", "not", "need", "needed", "now", "about", "anything", "stuff", "things"})


def recency_weight(created_at: datetime, now: Optional[datetime] = None) -> float:
    """Weight reflections by age: a week at full strength, then half, then a quarter."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    age_days = max((current - created_at).total_seconds(), 0.0) / 86400
    if age_days <= 7:
        return 1.0
    if age_days <= 14:
        return 0.5
    return 0.25


def detect_effect(text: str) -> Optional[EffectKind]:
    """Match directive vocabulary on word boundaries so "stakeholder" is not "hold"."""
    lowered = (text or "").lower()
    if text_matches_terms(lowered, BLOCK_KEYWORDS) or _NO_SUBJECT.search(lowered):
        return EffectKind.BLOCKED
    if text_matches_terms(lowered, DEMOTE_KEYWORDS):
        return EffectKind.DEMOTED
    if text_matches_terms(lowered, BOOST_KEYWORDS):
        return EffectKind.BOOSTED
    return None


def subject_terms(text: str) -> List[str]:
    """Content words of a reflection once directive vocabulary is removed."""
    terms: List[str] = []
    for token in tokenize(text):
        if token in _KEYWORD_TOKENS or token in STOPWORDS or token in terms:
            continue
        terms.append(token)
    return terms


def classify_reflection(reflection: Reflection, tasks: Iterable[Task]) -> ReflectionClassification:
    """Keyword heuristic for callers without an upstream classifier.

    Targets are the tasks whose text mentions one of the reflection's subject
    terms; a reflection without a recognised directive is neutral.
    """
    effect = detect_effect(reflection.text)
    terms = subject_terms(reflection.text)
    targets = [task.id for task in tasks if terms and text_matches_terms(task.text, terms)]
    if effect is EffectKind.BLOCKED:
        directive = DirectiveType.NEGATION
    elif effect is EffectKind.BOOSTED:
        directive = DirectiveType.POSITIVE
    else:
        directive = DirectiveType.NEUTRAL
    return ReflectionClassification(
        reflection_id=reflection.id,
        directive=directive,
        target_task_ids=targets,
        effect=effect,
    )


def interpret_reflections(
    reflections: Sequence[Reflection],
    tasks: Iterable[Task],
    classifications: Optional[Mapping[str, ReflectionClassification]] = None,
) -> List[ReflectionEffect]:
    """Turn active reflections into ranking effects scaled by recency."""
    task_list = list(tasks)
    known = {task.id for task in task_list}
    provided = dict(classifications or {})
    effects: List[ReflectionEffect] = []
    for reflection in reflections:
        if not reflection.is_active or not reflection.text.strip():
            continue
        classification = provided.get(reflection.id) or classify_reflection(reflection, task_list)
        kind = classification.effect or _DIRECTIVE_EFFECTS.get(classification.directive)
        if kind is None:
            continue
        for task_id in classification.target_task_ids:
            if task_id not in known:
                LOGGER.debug("Reflection %s targets unknown task %s", reflection.id, task_id)
                continue
            effects.append(
                ReflectionEffect(
                    reflection_id=reflection.id,
                    task_id=task_id,
                    effect=kind,
                    magnitude=DEFAULT_MAGNITUDES[kind] * reflection.recency_weight,
                    reason=_REASONS[kind],
                )
            )
    return effects


def _as_iso(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


class ReflectionStore:
    """Manages reflections persisted in SQLite."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    def add_reflection(self, reflection: Reflection) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO reflections (id, text, is_active, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    text = excluded.text,
                    is_active = excluded.is_active,
                    created_at = excluded.created_at
                """,
                (reflection.id, reflection.text, int(reflection.is_active), _as_iso(reflection.created_at)),
            )

    def set_active(self, reflection_id: str, is_active: bool) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "UPDATE reflections SET is_active = ? WHERE id = ?",
                (int(is_active), reflection_id),
            )
        return cursor.rowcount > 0

    def list_reflections(self, *, active_only: bool = False, now: Optional[datetime] = None) -> List[Reflection]:
        """Return stored reflections with recency weights computed against ``now``."""
        query = "SELECT id, text, is_active, created_at FROM reflections"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at DESC, id ASC"
        rows = self._conn.execute(query).fetchall()
        reflections: List[Reflection] = []
        for row in rows:
            created_at = datetime.fromisoformat(row["created_at"])
            reflections.append(
                Reflection(
                    id=row["id"],
                    text=row["text"],
                    is_active=bool(row["is_active"]),
                    recency_weight=recency_weight(created_at, now),
                    created_at=created_at,
                )
            )
        return reflections
