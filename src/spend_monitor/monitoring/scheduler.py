"""
Periodic alert evaluation.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from .alerts import AlertEvaluator, EvaluationReport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = timedelta(minutes=30)
DEFAULT_SAFETY_MARGIN = timedelta(seconds=60)


class EvaluationScheduler:
    """Runs an evaluation pass every ``interval`` until stopped.

    Each pass gets a deadline of ``interval - safety_margin`` so that rules
    still waiting when the next tick is due are deferred to it rather than
    overlapping it.
    """

    def __init__(
        self,
        evaluator: AlertEvaluator,
        interval: timedelta = DEFAULT_INTERVAL,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
    ):
        if interval <= timedelta(0):
            raise ValueError("Scheduler interval must be positive")
        self.evaluator = evaluator
        self.interval = interval
        self.safety_margin = min(safety_margin, interval / 2)
        self._stop = asyncio.Event()
        self.passes_run = 0

    @property
    def pass_deadline(self) -> float:
        return (self.interval - self.safety_margin).total_seconds()

    async def tick(self) -> Optional[EvaluationReport]:
        """Run one pass. Errors are logged and the schedule carries on."""
        try:
            report = await self.evaluator.run_evaluation_pass(deadline_seconds=self.pass_deadline)
        except Exception as e:
            logger.error(f"Alert evaluation pass failed: {e}")
            return None

        self.passes_run += 1
        if report.skipped:
            logger.warning("Previous evaluation pass still running; tick skipped")
        return report

    async def run_forever(self) -> None:
        logger.info(f"Alert scheduler started (interval {self.interval})")
        self._stop.clear()
        loop = asyncio.get_running_loop()
        while not self._stop.is_set():
            started = loop.time()
            await self.tick()
            remaining = max(0.0, self.interval.total_seconds() - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
        logger.info("Alert scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
