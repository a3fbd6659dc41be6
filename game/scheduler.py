"""Periodic due-check over every tracked task."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .errors import InvalidTransitionError, LifeQuestError
from .refresh import TaskRefresher
from .timing import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


@dataclass
class TickReport:
    started_at: datetime
    checked: int = 0
    refreshed: list[str] = field(default_factory=list)
    awaiting_input: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"checked={self.checked} refreshed={len(self.refreshed)} "
            f"awaiting_input={len(self.awaiting_input)} errors={len(self.errors)}"
        )


async def _cancel_task(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class Scheduler:
    """Runs ``refresh_if_due`` for every completed task on a fixed interval."""

    def __init__(
        self,
        refresher: TaskRefresher,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        manual_fallback: timedelta | None = None,
        clock: Clock | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"Scheduler interval must be positive, got {interval_seconds}")
        self._refresher = refresher
        self._interval = float(interval_seconds)
        self._manual_fallback = manual_fallback
        self._clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0
        self.last_report: TickReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="lifequest-scheduler")
        logger.info("Scheduler started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        await _cancel_task(self._task)
        self._task = None
        logger.info("Scheduler stopped after %d tick(s)", self.ticks)

    async def tick(self) -> TickReport:
        now = self._clock.now()
        report = TickReport(started_at=now)
        tasks, parse_errors = self._refresher.list_tasks()
        for exc in parse_errors:
            logger.warning("Skipping unreadable task note %s: %s", exc.doc_id, exc)
            report.errors.append(f"{exc.doc_id}: {exc}")

        for task in tasks:
            report.checked += 1
            if not task.is_completed:
                continue
            try:
                if self._manual_fallback is not None and task.next_due_at is None:
                    await self._refresher.apply_manual_fallback(task.doc_id, self._manual_fallback, now)
                outcome = await self._refresher.refresh_if_due(task.doc_id, now)
            except InvalidTransitionError as exc:
                # The task changed state since it was listed.
                logger.info("Skipping %s: %s", task.doc_id, exc)
                continue
            except (LifeQuestError, LookupError) as exc:
                logger.warning("Due-check skipped for %s: %s", task.doc_id, exc)
                report.errors.append(f"{task.doc_id}: {exc}")
                continue
            except Exception as exc:
                logger.error("Due-check failed for %s: %s", task.doc_id, exc, exc_info=True)
                report.errors.append(f"{task.doc_id}: {exc}")
                continue

            if outcome.refreshed:
                report.refreshed.append(task.doc_id)
            elif outcome.awaiting_input:
                report.awaiting_input.append(task.doc_id)
            for exc in outcome.errors:
                report.errors.append(f"{task.doc_id}: {exc}")

        self.ticks += 1
        self.last_report = report
        logger.debug("Tick %d: %s", self.ticks, report.summary())
        return report

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Scheduler tick error: %s", exc, exc_info=True)
            await asyncio.sleep(self._interval)
