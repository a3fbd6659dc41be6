"""Task lifecycle: 进行中 (in progress) ⇄ 已完成 (completed).

``complete`` moves a task to completed, pays out its rewards and works out
when it comes back. ``refresh_if_due`` moves a completed task back to in
progress once its due time has passed. Both run under the task note's lock
and write all changed fields in a single document write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Protocol

from vault.models import Task, TaskStatus
from vault.store import DocumentNotFoundError, DocumentStore

from .config import VaultLayout
from .errors import InvalidTransitionError, LifeQuestError, ParseError
from .locks import KeyedLocks
from .memory import HistoryDB
from .rewards import DispatchResult, RewardDispatcher
from .timing import (
    NEEDS_INPUT,
    Clock,
    DailySchedule,
    IntervalBase,
    IntervalPolicy,
    ManualPolicy,
    MonthlySchedule,
    Policy,
    ReferenceTimes,
    SystemClock,
    WeeklySchedule,
    compute_next_due,
    parse_policy,
)

logger = logging.getLogger(__name__)


class PromptProvider(Protocol):
    async def prompt_for_timestamp(self, task: Task) -> datetime | None: ...


class StaticPromptProvider:
    """Answers every prompt with the same value (``None`` = no answer)."""

    def __init__(self, answer: datetime | None = None):
        self.answer = answer
        self.asked: list[str] = []

    async def prompt_for_timestamp(self, task: Task) -> datetime | None:
        self.asked.append(task.uuid)
        return self.answer


@dataclass
class CompletionOutcome:
    task: Task
    rewards: DispatchResult
    needs_input: bool = False
    errors: list[LifeQuestError] = field(default_factory=list)

    @property
    def next_due_at(self) -> datetime | None:
        return self.task.next_due_at


@dataclass
class RefreshOutcome:
    task: Task
    refreshed: bool = False
    awaiting_input: bool = False
    errors: list[LifeQuestError] = field(default_factory=list)


COMPLETION_HEADING = "完成记录"


def completion_journal_line(completed_at: datetime, count: int) -> str:
    return f"在 {completed_at:%Y/%m/%d %H:%M} 完成第{count}次"


def completion_heading(count: int) -> str:
    return f"{COMPLETION_HEADING}（已完成{count}次）"


class TaskRefresher:
    """Owns task status, completion count and next due time."""

    def __init__(
        self,
        store: DocumentStore,
        layout: VaultLayout,
        dispatcher: RewardDispatcher,
        history: HistoryDB,
        clock: Clock | None = None,
        prompt: PromptProvider | None = None,
        locks: KeyedLocks | None = None,
    ):
        self._store = store
        self._layout = layout
        self._dispatcher = dispatcher
        self._history = history
        self._clock = clock or SystemClock()
        self._prompt = prompt
        self._locks = locks or KeyedLocks()

    # ── Lookup ──────────────────────────────────────────────────

    def load(self, doc_id: str) -> Task:
        metadata, body = self._store.read_document(doc_id)
        return Task.from_frontmatter(doc_id, metadata, body)

    def list_tasks(self) -> tuple[list[Task], list[ParseError]]:
        tasks: list[Task] = []
        errors: list[ParseError] = []
        for doc_id in self._store.list_by_prefix(self._layout.tasks_prefix):
            try:
                tasks.append(self.load(doc_id))
            except ParseError as exc:
                exc.doc_id = doc_id
                errors.append(exc)
        return tasks, errors

    def resolve(self, task_id: str) -> str:
        """Map a document id or a task uuid to the task's document id."""
        if task_id.endswith(".md") and self._store.exists(task_id):
            return task_id
        tasks, _errors = self.list_tasks()
        for task in tasks:
            if task.uuid == task_id:
                return task.doc_id
        raise DocumentNotFoundError(task_id)

    # ── Transitions ─────────────────────────────────────────────

    async def complete(self, task_id: str, next_due: datetime | None = None) -> CompletionOutcome:
        """Complete an in-progress task.

        ``next_due`` is only consulted for manual-refresh tasks; without it the
        prompt provider is asked, and if that has no answer either the task is
        left completed with no next due time until one is supplied.
        """
        doc_id = self.resolve(task_id)
        async with self._locks.hold(doc_id):
            task = self.load(doc_id)
            if task.status is not TaskStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    f"Cannot complete {task.title}: already {task.status.value}",
                    doc_id=doc_id,
                    status=task.status.value,
                )

            now = self._clock.now()
            count = task.completion_count + 1
            rules, errors = task.reward_rules()
            for exc in errors:
                exc.doc_id = doc_id
                logger.warning("Dropping reward row in %s: %s", doc_id, exc)

            rewards = await self._dispatcher.dispatch(task.uuid, rules, count, now)
            errors.extend(rewards.errors)

            next_due_at, needs_input, due_errors = await self._due_after_completion(
                task, now, next_due
            )
            errors.extend(due_errors)

            applied = rewards.recorded if rewards.replayed else rewards.applied_dicts()

            updated = replace(
                task,
                status=TaskStatus.COMPLETED,
                completion_count=count,
                last_completed_at=now,
                next_due_at=next_due_at,
            )
            self._store.update_metadata(
                doc_id,
                updated.lifecycle_fields(),
                append_lines=[completion_journal_line(now, count)],
                headings={COMPLETION_HEADING: completion_heading(count)},
            )

        await self._history.log_task_event(
            task.uuid,
            "completed",
            f"{task.title} #{count}",
            metadata={
                "rewards": applied,
                "replayed": rewards.replayed,
                "next_due_at": updated.next_due_at,
                "errors": [str(exc) for exc in errors],
            },
        )
        logger.info(
            "Completed %s (#%d); %d reward(s) applied, next due %s",
            task.title,
            count,
            len(applied),
            updated.next_due_at or "pending input",
        )
        return CompletionOutcome(task=updated, rewards=rewards, needs_input=needs_input, errors=errors)

    async def supply_next_due(self, task_id: str, when: datetime) -> Task:
        """Set the next due time of a completed task, typically a manual one."""
        doc_id = self.resolve(task_id)
        async with self._locks.hold(doc_id):
            task = self.load(doc_id)
            if task.status is not TaskStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"Cannot schedule {task.title}: still {task.status.value}",
                    doc_id=doc_id,
                    status=task.status.value,
                )
            now = self._clock.now()
            if when <= now:
                raise ParseError(f"Next due time {when} is not after {now}", doc_id=doc_id)
            updated = replace(task, next_due_at=when)
            self._store.update_metadata(doc_id, updated.lifecycle_fields())

        await self._history.log_task_event(
            task.uuid, "next_due_set", task.title, metadata={"next_due_at": when}
        )
        logger.info("Next due time for %s set to %s", task.title, when)
        return updated

    async def refresh_if_due(self, task_id: str, now: datetime | None = None) -> RefreshOutcome:
        """Move a completed task back to in progress once it is due."""
        doc_id = self.resolve(task_id)
        async with self._locks.hold(doc_id):
            task = self.load(doc_id)
            if task.status is not TaskStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"Cannot refresh {task.title}: still {task.status.value}",
                    doc_id=doc_id,
                    status=task.status.value,
                )
            now = now or self._clock.now()
            if task.next_due_at is None:
                logger.debug("%s has no next due time yet", task.title)
                return RefreshOutcome(task=task, awaiting_input=True)
            if now < task.next_due_at:
                return RefreshOutcome(task=task)

            try:
                next_due_at = self._due_after_refresh(parse_policy(task.refresh), task, now)
            except ParseError as exc:
                exc.doc_id = doc_id
                logger.warning("Not refreshing %s: %s", task.title, exc)
                return RefreshOutcome(task=task, errors=[exc])

            updated = replace(
                task,
                status=TaskStatus.IN_PROGRESS,
                current_cycle_start=now,
                next_due_at=next_due_at,
            )
            self._store.update_metadata(doc_id, updated.lifecycle_fields())

        await self._history.log_task_event(
            task.uuid,
            "refreshed",
            task.title,
            metadata={"cycle_start": now, "next_due_at": next_due_at},
        )
        logger.info("Refreshed %s; next due %s", task.title, next_due_at or "after completion")
        return RefreshOutcome(task=updated, refreshed=True)

    async def apply_manual_fallback(
        self, task_id: str, fallback: timedelta, now: datetime | None = None
    ) -> Task | None:
        """Give a manual task that never got a next due time one of its own.

        The fallback counts from the last completion but is never earlier than
        ``now``. Returns the updated task, or None when nothing applied.
        """
        doc_id = self.resolve(task_id)
        async with self._locks.hold(doc_id):
            task = self.load(doc_id)
            if task.status is not TaskStatus.COMPLETED or task.next_due_at is not None:
                return None
            try:
                policy = parse_policy(task.refresh)
            except ParseError:
                return None
            if not isinstance(policy, ManualPolicy):
                return None
            now = now or self._clock.now()
            due = max((task.last_completed_at or now) + fallback, now)
            updated = replace(task, next_due_at=due)
            self._store.update_metadata(doc_id, updated.lifecycle_fields())

        await self._history.log_task_event(
            task.uuid, "next_due_set", task.title, metadata={"next_due_at": due, "fallback": True}
        )
        logger.info("No next time supplied for %s; falling back to %s", task.title, due)
        return updated

    # ── Due-time helpers ────────────────────────────────────────

    async def _due_after_completion(
        self,
        task: Task,
        now: datetime,
        supplied: datetime | None,
    ) -> tuple[datetime | None, bool, list[LifeQuestError]]:
        """Return (next due, needs input, errors).

        A policy error keeps the prior next due time. A task that has never been
        refreshed counts its first cycle from this completion.
        """
        try:
            policy = parse_policy(task.refresh)
            due = compute_next_due(
                policy,
                ReferenceTimes(
                    now=now,
                    last_completion=now,
                    cycle_start=task.current_cycle_start or now,
                ),
            )
        except ParseError as exc:
            exc.doc_id = task.doc_id
            logger.warning("Cannot work out next due time of %s: %s", task.title, exc)
            return task.next_due_at, False, [exc]

        if due is not NEEDS_INPUT:
            return due, False, []

        when = supplied
        if when is None and self._prompt is not None:
            when = await self._prompt.prompt_for_timestamp(task)
        if when is None:
            return None, True, []
        if when <= now:
            exc = ParseError(f"Next due time {when} is not after {now}", doc_id=task.doc_id)
            logger.warning("Ignoring next due time for %s: %s", task.title, exc)
            return None, True, [exc]
        return when, False, []

    @staticmethod
    def _due_after_refresh(policy: Policy, task: Task, now: datetime) -> datetime | None:
        if isinstance(policy, (DailySchedule, WeeklySchedule, MonthlySchedule)):
            due = compute_next_due(policy, ReferenceTimes(now=now))
        elif isinstance(policy, IntervalPolicy) and policy.base is IntervalBase.LAST_REFRESH:
            due = compute_next_due(policy, ReferenceTimes(now=now, cycle_start=now))
        else:
            # Counted from a completion that has not happened yet, or asked for.
            return None
        return due if isinstance(due, datetime) else None
