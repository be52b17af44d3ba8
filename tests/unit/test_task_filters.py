from __future__ import annotations

import pytest

from prioritizer.planning.task_filters import (
    cosine_similarity,
    dominant_terms,
    extract_skill_tags,
    infer_workflow_stage,
    stage_index,
    term_similarity,
    text_matches_terms,
    tokenize,
)


@pytest.mark.parametrize(
    ("text", "stage"),
    [
        ("Interview five customers", "research"),
        ("Wireframe the signup flow", "design"),
        ("Implement billing webhooks", "build"),
        ("Regression pass on checkout", "test"),
        ("Deploying the worker fleet", "deploy"),
        ("Announce the beta", "launch"),
        ("Lunch with the team", None),
        ("", None),
    ],
)
def test_infer_workflow_stage(text: str, stage) -> None:
    assert infer_workflow_stage(text) == stage


def test_stage_index_orders_the_workflow() -> None:
    assert stage_index("research") < stage_index("build") < stage_index("launch")
    assert stage_index(None) is None
    assert stage_index("unknown") is None


def test_skill_tags_and_dominant_terms() -> None:
    assert extract_skill_tags("Tune postgres queries for the analytics dashboard") == {"backend", "data"}
    terms = dominant_terms("Write docs, review docs, publish docs")
    assert "docs" in terms
    assert "docs" in extract_skill_tags("Write docs")


def test_tokenize_drops_short_words_and_stopwords() -> None:
    assert tokenize("Add the new API to our backend") == ["api", "backend"]


def test_similarity_helpers() -> None:
    assert term_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    assert term_similarity(set(), {"a"}) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_text_matches_terms_handles_plurals_and_word_boundaries() -> None:
    assert text_matches_terms("Review the invoices", ["invoice"])
    assert not text_matches_terms("Reinvoice customers", ["invoice"])
    assert not text_matches_terms("Anything", [])
