from __future__ import annotations

import asyncio

from prioritizer.config import RankingSettings
from prioritizer.memory.schema import EffectKind, OrderedPlan, ReflectionEffect
from prioritizer.planning.ranking import AdjustmentResult
from prioritizer.planning.scheduler import AdjustmentScheduler

BASELINE = OrderedPlan(ordered_task_ids=["t1", "t2", "t3"])


def _boost(task_id: str) -> list[ReflectionEffect]:
    return [ReflectionEffect(reflection_id="r", task_id=task_id, effect=EffectKind.BOOSTED, magnitude=2.0)]


def test_rapid_submissions_apply_only_the_latest() -> None:
    applied: list[int] = []

    async def scenario() -> AdjustmentScheduler:
        scheduler = AdjustmentScheduler(
            BASELINE,
            RankingSettings(debounce_ms=20),
            on_apply=lambda result, generation: applied.append(generation),
        )
        scheduler.submit(_boost("t2"))
        scheduler.submit(_boost("t3"))
        last = scheduler.submit(_boost("t3"))
        result = await scheduler.flush()
        assert result is not None
        assert last == 3
        return scheduler

    scheduler = asyncio.run(scenario())

    assert applied == [3]
    assert scheduler.applied_generation == 3
    assert scheduler.current.plan.ordered_task_ids == ["t3", "t1", "t2"]
    assert scheduler.baseline.ordered_task_ids == ["t1", "t2", "t3"]


def test_results_superseded_during_post_processing_are_discarded() -> None:
    calls: list[AdjustmentResult] = []

    async def scenario() -> AdjustmentScheduler:
        scheduler: AdjustmentScheduler

        async def post_process(result: AdjustmentResult) -> AdjustmentResult:
            calls.append(result)
            if len(calls) == 1:
                scheduler.submit(_boost("t2"))
            return result

        scheduler = AdjustmentScheduler(BASELINE, RankingSettings(debounce_ms=1), post_process=post_process)
        scheduler.submit(_boost("t3"))
        await scheduler.flush()
        return scheduler

    scheduler = asyncio.run(scenario())

    assert len(calls) == 2
    assert scheduler.discarded == [1]
    assert scheduler.applied_generation == 2
    assert scheduler.current.plan.ordered_task_ids == ["t2", "t1", "t3"]


def test_rebase_invalidates_pending_work() -> None:
    async def scenario() -> AdjustmentScheduler:
        scheduler = AdjustmentScheduler(BASELINE, RankingSettings(debounce_ms=50))
        scheduler.submit(_boost("t3"))
        scheduler.rebase(OrderedPlan(ordered_task_ids=["t3", "t2", "t1"]))
        assert await scheduler.flush() is None
        return scheduler

    scheduler = asyncio.run(scenario())

    assert scheduler.generation == 2
    assert scheduler.applied_generation == 0
    assert scheduler.current is None
