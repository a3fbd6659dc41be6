"""Core orchestrator - wires the vault, the ledger and the refresh machinery.

Usage::

    async with LifeQuest(config=cfg) as game:
        await game.complete("a1b2c3")
        report = await game.tick()
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

from vault.models import EntityKind, ProgressionEntity, Task
from vault.store import MarkdownVault

from .config import VaultLayout, load_config
from .locks import KeyedLocks
from .memory import HistoryDB
from .refresh import CompletionOutcome, PromptProvider, RefreshOutcome, TaskRefresher
from .rewards import ProgressionRepository, RewardDispatcher
from .scheduler import DEFAULT_INTERVAL_SECONDS, Scheduler, TickReport
from .timing import Clock, SystemClock

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _resolve(path_text: str) -> Path:
    path = Path(path_text).expanduser()
    return path if path.is_absolute() else _PROJECT_ROOT / path


class LifeQuest:
    """The recurring-task game bound to one vault."""

    def __init__(
        self,
        config: dict | None = None,
        clock: Clock | None = None,
        prompt: PromptProvider | None = None,
    ):
        self._cfg = config or load_config()
        self._clock = clock or SystemClock()

        vault_cfg = self._cfg.get("vault", {})
        storage = self._cfg.get("storage", {})
        sched_cfg = self._cfg.get("scheduler", {})

        self.store = MarkdownVault(_resolve(vault_cfg.get("root", "vault")))
        self.layout = VaultLayout.from_config(self._cfg)
        self.history = HistoryDB(_resolve(storage.get("history_db", "data/history.db")))
        self._locks = KeyedLocks()

        self.progression = ProgressionRepository(self.store, self.layout, self._locks)
        self.dispatcher = RewardDispatcher(self.progression, self.history)
        self.refresher = TaskRefresher(
            self.store,
            self.layout,
            self.dispatcher,
            self.history,
            clock=self._clock,
            prompt=prompt,
            locks=self._locks,
        )

        fallback_hours = sched_cfg.get("manual_fallback_hours")
        self.scheduler = Scheduler(
            self.refresher,
            interval_seconds=sched_cfg.get("check_interval_seconds", DEFAULT_INTERVAL_SECONDS),
            manual_fallback=timedelta(hours=float(fallback_hours)) if fallback_hours else None,
            clock=self._clock,
        )

    async def __aenter__(self) -> LifeQuest:
        await self.history.open()
        logger.debug("Vault at %s", self.store.root)
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.scheduler.stop()
        await self.history.close()

    async def tick(self) -> TickReport:
        report = await self.scheduler.tick()
        logger.info("Due-check complete: %s", report.summary())
        return report

    async def complete(self, task_id: str, next_due: datetime | None = None) -> CompletionOutcome:
        return await self.refresher.complete(task_id, next_due=next_due)

    async def supply_next_due(self, task_id: str, when: datetime) -> Task:
        return await self.refresher.supply_next_due(task_id, when)

    async def refresh_if_due(self, task_id: str) -> RefreshOutcome:
        return await self.refresher.refresh_if_due(task_id)

    def character(self) -> ProgressionEntity:
        return self.progression.load(EntityKind.CHARACTER)
