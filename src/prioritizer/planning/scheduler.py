"""Debounced, preemptible driver for reflection-triggered re-ranking."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional

from ..config import RankingSettings
from ..memory.schema import LockSet, OrderedPlan, ReflectionEffect
from .ranking import AdjustmentResult, adjust

LOGGER = logging.getLogger(__name__)

__all__ = ["AdjustmentScheduler"]

PostProcessor = Callable[[AdjustmentResult], Awaitable[AdjustmentResult]]
ApplyCallback = Callable[[AdjustmentResult, int], None]


class AdjustmentScheduler:
    """Run ``adjust`` after a quiet period, keeping only the newest submission.

    Every ``submit`` bumps a generation counter and cancels the pending run. A run
    that finishes after a newer submission is discarded instead of applied, so a
    slow post-processing step (for example the plan validator) can never overwrite
    fresher state.
    """

    def __init__(
        self,
        baseline: OrderedPlan,
        settings: Optional[RankingSettings] = None,
        *,
        post_process: Optional[PostProcessor] = None,
        on_apply: Optional[ApplyCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._baseline = baseline
        self._settings = settings or RankingSettings()
        self._post_process = post_process
        self._on_apply = on_apply
        self._clock = clock
        self._generation = 0
        self._applied_generation = 0
        self._last_applied_at: Optional[float] = None
        self._pending: Optional[asyncio.Task[None]] = None
        self._current: Optional[AdjustmentResult] = None
        self.discarded: List[int] = []

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def applied_generation(self) -> int:
        return self._applied_generation

    @property
    def baseline(self) -> OrderedPlan:
        return self._baseline

    @property
    def current(self) -> Optional[AdjustmentResult]:
        """Most recently applied adjustment, if any."""
        return self._current

    def rebase(self, baseline: OrderedPlan) -> int:
        """Replace the baseline; any in-flight run becomes stale."""
        self._baseline = baseline
        self._current = None
        return self._supersede()

    def submit(self, effects: Iterable[ReflectionEffect], lock_set: LockSet = frozenset()) -> int:
        """Schedule an adjustment and return its generation. Requires a running loop."""
        generation = self._supersede()
        self._pending = asyncio.get_running_loop().create_task(
            self._run(generation, list(effects), frozenset(lock_set))
        )
        return generation

    def cancel(self) -> None:
        self._supersede()

    async def flush(self) -> Optional[AdjustmentResult]:
        """Wait for the pending run (if any) and return the applied adjustment."""
        while self._pending is not None:
            pending = self._pending
            try:
                await pending
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
            if pending is self._pending:
                self._pending = None
        return self._current

    def _supersede(self) -> int:
        self._generation += 1
        if self._pending is not None and not self._pending.done():
            LOGGER.debug("Generation %d supersedes pending adjustment", self._generation)
            self._pending.cancel()
        self._pending = None
        return self._generation

    async def _wait_quiet_period(self) -> None:
        await asyncio.sleep(self._settings.debounce_ms / 1000.0)
        if self._settings.rate_limit_ms and self._last_applied_at is not None:
            elapsed = self._clock() - self._last_applied_at
            remaining = self._settings.rate_limit_ms / 1000.0 - elapsed
            if remaining > 0:
                LOGGER.debug("Rate limit active; delaying adjustment by %.3fs", remaining)
                await asyncio.sleep(remaining)

    async def _run(self, generation: int, effects: List[ReflectionEffect], lock_set: LockSet) -> None:
        await self._wait_quiet_period()
        if generation != self._generation:
            self.discarded.append(generation)
            return

        result = adjust(self._baseline, effects, lock_set)
        if self._post_process is not None:
            result = await self._post_process(result)

        if generation != self._generation:
            LOGGER.info(
                "Discarding adjustment from generation %d; generation %d is current",
                generation,
                self._generation,
            )
            self.discarded.append(generation)
            return

        self._current = result
        self._applied_generation = generation
        self._last_applied_at = self._clock()
        LOGGER.info("Applied adjustment for generation %d", generation)
        if self._on_apply is not None:
            self._on_apply(result, generation)
