"""Frequency-gated rewards routed to progression and stats.

A task's reward table says "every N completions, add X to Y". Experience
goes through the leveling curve; attributes and resources are flat counters.
Each row stands on its own: a missing skill or a bad row is reported and the
other rows still apply.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

from progression import apply_experience, levels_gained
from vault.models import (
    COMPLETION_PENDING,
    KEY_STAT_VALUE,
    CompletionRecord,
    EntityKind,
    ProgressionEntity,
    RewardKind,
    RewardRule,
    as_int,
)
from vault.store import DocumentNotFoundError, DocumentStore

from .config import VaultLayout
from .errors import LifeQuestError, MissingTargetError, ParseError
from .locks import KeyedLocks
from .memory import HistoryDB

logger = logging.getLogger(__name__)


@dataclass
class RewardApplication:
    """One reward that was actually applied."""

    rule: RewardRule
    doc_id: str
    before: int
    after: int
    level_before: int | None = None
    level_after: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "target": self.rule.label,
            "amount": self.rule.amount,
            "frequency": self.rule.trigger_frequency,
            "doc_id": self.doc_id,
            "before": self.before,
            "after": self.after,
        }
        if self.level_before is not None:
            data["level_before"] = self.level_before
            data["level_after"] = self.level_after
        return data


@dataclass
class DispatchResult:
    applied: list[RewardApplication] = field(default_factory=list)
    errors: list[LifeQuestError] = field(default_factory=list)
    replayed: bool = False
    # On replay: the rewards recorded the first time round.
    recorded: list[dict[str, Any]] = field(default_factory=list)

    def applied_dicts(self) -> list[dict[str, Any]]:
        return [app.to_dict() for app in self.applied]


class ProgressionRepository:
    """Loads and saves the character, skills, attributes and resources."""

    def __init__(self, store: DocumentStore, layout: VaultLayout, locks: KeyedLocks | None = None):
        self._store = store
        self._layout = layout
        self._locks = locks or KeyedLocks()

    def entity_doc(self, kind: EntityKind, name: str) -> str:
        if kind is EntityKind.CHARACTER:
            return self._layout.character_doc
        return self._layout.skill_doc(name)

    def stat_doc(self, kind: RewardKind, name: str) -> str:
        if kind is RewardKind.ATTRIBUTE:
            return self._layout.attribute_doc(name)
        return self._layout.resource_doc(name)

    @staticmethod
    @contextmanager
    def _target(doc_id: str, label: str, name: str) -> Iterator[None]:
        # A note deleted between lookup and write is a missing target too.
        try:
            yield
        except DocumentNotFoundError as exc:
            raise MissingTargetError(f"No {label} note at {doc_id}", doc_id=doc_id, target=name) from exc

    def load(self, kind: EntityKind, name: str = "") -> ProgressionEntity:
        doc_id = self.entity_doc(kind, name)
        with self._target(doc_id, kind.value, name):
            data = self._store.get_metadata(doc_id)
        try:
            return ProgressionEntity.from_frontmatter(kind, name or "character", data)
        except ParseError as exc:
            exc.doc_id = doc_id
            raise

    def save(self, entity: ProgressionEntity) -> None:
        name = "" if entity.kind is EntityKind.CHARACTER else entity.name
        doc_id = self.entity_doc(entity.kind, name)
        with self._target(doc_id, entity.kind.value, name):
            self._store.update_metadata(doc_id, entity.to_frontmatter())

    async def gain_experience(
        self, kind: EntityKind, name: str, delta: int
    ) -> tuple[ProgressionEntity, ProgressionEntity]:
        doc_id = self.entity_doc(kind, name)
        async with self._locks.hold(doc_id):
            before = self.load(kind, name)
            after = apply_experience(before, delta)
            self.save(after)
        if levels_gained(before, after):
            logger.info(
                "%s %s leveled up: %d -> %d", kind.value, before.name, before.level, after.level
            )
        return before, after

    async def add_stat(self, kind: RewardKind, name: str, amount: int) -> tuple[str, int, int]:
        doc_id = self.stat_doc(kind, name)
        async with self._locks.hold(doc_id):
            with self._target(doc_id, kind.value, name):
                data = self._store.get_metadata(doc_id)
                try:
                    before = as_int(data.get(KEY_STAT_VALUE), 0, KEY_STAT_VALUE)
                except ParseError as exc:
                    exc.doc_id = doc_id
                    raise
                after = before + amount
                self._store.update_metadata(doc_id, {KEY_STAT_VALUE: after})
        return doc_id, before, after


class RewardDispatcher:
    """Applies the rules that fire on a given completion count, once.

    The ledger row for the completion is claimed before anything is paid and
    settled afterwards. A retry of the same completion finds the claim and
    replays what was recorded instead of paying again; a payout interrupted
    half way is never repeated.
    """

    def __init__(self, repository: ProgressionRepository, history: HistoryDB):
        self._repo = repository
        self._history = history

    async def dispatch(
        self,
        task_uuid: str,
        rules: list[RewardRule],
        completion_count: int,
        completed_at: datetime | None = None,
    ) -> DispatchResult:
        claim = CompletionRecord(
            task_uuid,
            completion_count,
            completed_at or datetime.now().replace(microsecond=0),
            status=COMPLETION_PENDING,
        )
        if not await self._history.record_completion(claim):
            existing = await self._history.get_completion(task_uuid, completion_count)
            if existing is not None and existing.is_pending:
                logger.warning(
                    "Completion %s#%d was interrupted during payout; not paying again",
                    task_uuid,
                    completion_count,
                )
            else:
                logger.info(
                    "Completion %s#%d already rewarded; not applying again", task_uuid, completion_count
                )
            recorded = list(existing.rewards) if existing is not None else []
            return DispatchResult(replayed=True, recorded=recorded)

        result = DispatchResult()
        for rule in rules:
            if not rule.fires_on(completion_count):
                continue
            try:
                result.applied.append(await self._apply(rule))
            except (MissingTargetError, ParseError) as exc:
                logger.warning("Reward %s skipped: %s", rule.label, exc)
                result.errors.append(exc)
        await self._history.settle_completion(task_uuid, completion_count, result.applied_dicts())
        return result

    async def _apply(self, rule: RewardRule) -> RewardApplication:
        if rule.target_kind in (RewardKind.EXPERIENCE, RewardKind.SKILL_EXPERIENCE):
            if rule.amount < 0:
                raise ParseError(f"Negative experience reward {rule.amount} for {rule.label}")
            kind = EntityKind.CHARACTER if rule.target_kind is RewardKind.EXPERIENCE else EntityKind.SKILL
            before, after = await self._repo.gain_experience(kind, rule.target_name, rule.amount)
            return RewardApplication(
                rule=rule,
                doc_id=self._repo.entity_doc(kind, rule.target_name),
                before=before.current_experience,
                after=after.current_experience,
                level_before=before.level,
                level_after=after.level,
            )

        doc_id, before_value, after_value = await self._repo.add_stat(
            rule.target_kind, rule.target_name, rule.amount
        )
        return RewardApplication(rule=rule, doc_id=doc_id, before=before_value, after=after_value)
