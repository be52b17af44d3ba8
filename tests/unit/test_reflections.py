from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from prioritizer.memory.reflections import (
    classify_reflection,
    detect_effect,
    interpret_reflections,
    recency_weight,
    subject_terms,
)
from prioritizer.memory.schema import (
    DirectiveType,
    EffectKind,
    Reflection,
    ReflectionClassification,
    Task,
)

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (timedelta(days=0), 1.0),
        (timedelta(days=7), 1.0),
        (timedelta(days=7, hours=1), 0.5),
        (timedelta(days=14), 0.5),
        (timedelta(days=30), 0.25),
    ],
)
def test_recency_weight_steps(age: timedelta, expected: float) -> None:
    assert recency_weight(NOW - age, NOW) == expected


def test_naive_timestamps_are_treated_as_utc() -> None:
    assert recency_weight(datetime(2024, 5, 1), NOW) == 0.25


def test_detect_effect_prefers_blocking_vocabulary() -> None:
    assert detect_effect("We cannot ship until legal approval") is EffectKind.BLOCKED
    assert detect_effect("Defer the analytics work") is EffectKind.DEMOTED
    assert detect_effect("Focus on onboarding") is EffectKind.BOOSTED
    assert detect_effect("Nice weather today") is None


def test_subject_terms_drop_directive_words() -> None:
    assert subject_terms("Please ignore the documentation tasks for now") == ["please", "documentation"]


def test_ignore_documentation_targets_only_documentation_tasks(documentation_tasks) -> None:
    classification = classify_reflection(
        Reflection(id="r1", text="ignore documentation tasks"), documentation_tasks
    )

    assert classification.directive is DirectiveType.NEGATION
    assert classification.effect is EffectKind.BLOCKED
    assert classification.target_task_ids == ["doc-writing", "doc-review"]


def test_focus_reflection_is_positive(documentation_tasks) -> None:
    classification = classify_reflection(Reflection(id="r2", text="focus on feature code"), documentation_tasks)

    assert classification.directive is DirectiveType.POSITIVE
    assert classification.target_task_ids == ["feature-code"]


def test_interpretation_scales_magnitude_by_recency(documentation_tasks) -> None:
    reflections = [
        Reflection(id="old", text="ignore documentation tasks", recency_weight=0.5),
        Reflection(id="off", text="focus on feature code", is_active=False),
    ]

    effects = interpret_reflections(reflections, documentation_tasks)

    assert [(item.task_id, item.effect, item.magnitude) for item in effects] == [
        ("doc-writing", EffectKind.BLOCKED, 5.0),
        ("doc-review", EffectKind.BLOCKED, 5.0),
    ]


def test_provided_classifications_override_the_heuristic(documentation_tasks) -> None:
    reflection = Reflection(id="r3", text="ignore documentation tasks")
    provided = ReflectionClassification(
        reflection_id="r3",
        directive=DirectiveType.POSITIVE,
        target_task_ids=["feature-code", "ghost"],
    )

    effects = interpret_reflections([reflection], documentation_tasks, {"r3": provided})

    assert [(item.task_id, item.effect, item.magnitude) for item in effects] == [
        ("feature-code", EffectKind.BOOSTED, 2.0)
    ]


def test_neutral_reflections_produce_no_effects(documentation_tasks) -> None:
    reflection = Reflection(id="r4", text="The documentation looks tidy")
    assert interpret_reflections([reflection], documentation_tasks) == []


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("focus on stakeholder interviews", EffectKind.BOOSTED),
        ("polish the banner artwork", None),
        ("rework the dropdown menu", None),
        ("we are blocked on legal", EffectKind.BLOCKED),
        ("waiting for approval from finance", EffectKind.BLOCKED),
    ],
)
def test_keywords_match_whole_words_only(text: str, expected) -> None:
    assert detect_effect(text) is expected


def test_focus_on_stakeholders_targets_the_focused_task() -> None:
    tasks = [
        Task(id="interviews", text="Run stakeholder interviews"),
        Task(id="deck", text="Prepare investor deck"),
    ]

    classification = classify_reflection(Reflection(id="r5", text="focus on stakeholder interviews"), tasks)

    assert classification.directive is DirectiveType.POSITIVE
    assert classification.target_task_ids == ["interviews"]


def test_no_subject_reads_as_negation(documentation_tasks) -> None:
    classification = classify_reflection(Reflection(id="r6", text="no documentation"), documentation_tasks)

    assert classification.directive is DirectiveType.NEGATION
    assert classification.target_task_ids == ["doc-writing", "doc-review"]
    assert detect_effect("no time for reviews this week") is EffectKind.DEMOTED
