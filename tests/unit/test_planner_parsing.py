from __future__ import annotations

import asyncio

import pytest

from prioritizer.memory.schema import DirectiveType, ReflectionClassification, Task
from prioritizer.models.planner import (
    PlannerRequest,
    PlannerResponseFormatError,
    PlannerTransportError,
    ReplayPlanner,
    parse_json_payload,
)


def test_parse_plain_and_fenced_json() -> None:
    assert parse_json_payload('{"ordered_task_ids": ["a"]}') == {"ordered_task_ids": ["a"]}
    fenced = "```json\n{\"ordered_task_ids\": [\"a\", \"b\"]}\n```"
    assert parse_json_payload(fenced) == {"ordered_task_ids": ["a", "b"]}


def test_parse_repairs_noise_and_trailing_commas() -> None:
    raw = "Sure! Here is the plan: {\"ordered_task_ids\": [\"a\", \"b\",],} Hope it helps."
    assert parse_json_payload(raw) == {"ordered_task_ids": ["a", "b"]}


def test_parse_accepts_python_literals_and_smart_quotes() -> None:
    assert parse_json_payload("{'ordered_task_ids': ('a',), 'ok': True}") == {
        "ordered_task_ids": ["a"],
        "ok": True,
    }
    assert parse_json_payload("{“ordered_task_ids”: []}") == {"ordered_task_ids": []}


def test_parse_prefers_fenced_body_over_surrounding_prose() -> None:
    raw = "Plan {draft} below.\n```\n[\"a\", \"b\",]\n```\nLet me know [if] this works."
    assert parse_json_payload(raw) == ["a", "b"]


@pytest.mark.parametrize("raw", [None, "", "   ", "no json here"])
def test_parse_rejects_unusable_output(raw) -> None:
    with pytest.raises(PlannerResponseFormatError):
        parse_json_payload(raw)


def test_request_prompt_lists_directives_and_repairs() -> None:
    request = PlannerRequest(
        tasks=[Task(id="a", text="Write docs", effort_hours=3)],
        directives=[
            ReflectionClassification(reflection_id="r", directive=DirectiveType.NEGATION, target_task_ids=["a"])
        ],
        outcome="Launch beta",
    )
    repaired = request.with_repairs(["task a must be excluded"], 2)
    prompt = repaired.render_prompt()

    assert "Outcome: Launch beta" in prompt
    assert "- a: Write docs (3h)" in prompt
    assert "Exclude these tasks:" in prompt
    assert "- task a must be excluded" in prompt
    assert request.repair_instructions == []
    assert repaired.to_payload()["iteration"] == 2


def test_replay_planner_runs_out_of_payloads() -> None:
    planner = ReplayPlanner([{"ordered_task_ids": []}])
    request = PlannerRequest(tasks=[])

    async def scenario() -> str:
        first = await planner.generate(request)
        with pytest.raises(PlannerTransportError):
            await planner.generate(request.with_repairs([], 2))
        return first

    assert asyncio.run(scenario()) == '{"ordered_task_ids": []}'
    assert [item.iteration for item in planner.requests] == [1, 2]
