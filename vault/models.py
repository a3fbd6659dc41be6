"""Typed records decoded from vault document frontmatter."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from game.errors import ParseError

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_TIMESTAMP_FORMATS = (
    TIMESTAMP_FORMAT,
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d",
)

# Frontmatter keys, as written by the note templates.
KEY_UUID = "uuid"
KEY_STATUS = "任务状态"
KEY_COMPLETIONS = "完成次数"
KEY_REFRESH_MODE = "刷新方式"
KEY_REFRESH_TIME = "刷新时间"
KEY_REFRESH_INTERVAL = "刷新间隔"
KEY_INTERVAL_BASE = "刷新间隔起算时间"
KEY_CYCLE_START = "本次刷新时间"
KEY_NEXT_DUE = "下一次刷新时间"
KEY_LAST_COMPLETED = "完成时间"
KEY_REWARDS = "奖励"

KEY_LEVEL = "等级"
KEY_THRESHOLD = "升级需要经验"
KEY_CHARACTER_EXP = "经验值"
KEY_SKILL_EXP = "当前经验"
KEY_STAT_VALUE = "当前值"

CHARACTER_THRESHOLD_INCREMENT = 1000
SKILL_THRESHOLD_INCREMENT = 100

COMPLETION_PENDING = "pending"
COMPLETION_SETTLED = "settled"

_TABLE_SEPARATOR_RE = re.compile(r"^\|?\s*:?-{2,}")


class TaskStatus(str, Enum):
    IN_PROGRESS = "进行中"
    COMPLETED = "已完成"


class EntityKind(str, Enum):
    CHARACTER = "character"
    SKILL = "skill"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime | None:
    """Decode a frontmatter timestamp.

    YAML may already hand back a ``datetime`` (unquoted values) or a ``date``;
    strings are tried against the formats the notes use. Empty means absent.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None, microsecond=0)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raw = _as_text(value)
    if not raw:
        return None
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw).replace(tzinfo=None, microsecond=0)
    except ValueError as exc:
        raise ParseError(f"Invalid {field_name}: {raw!r}") from exc


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime(TIMESTAMP_FORMAT)


def as_int(value: Any, default: int, field_name: str) -> int:
    if value is None or _as_text(value) == "":
        return default
    if isinstance(value, bool):
        raise ParseError(f"Invalid {field_name}: {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(_as_text(value))
    except ValueError as exc:
        raise ParseError(f"Invalid {field_name}: {value!r}") from exc


def table_rows_from_body(body: str) -> list[dict[str, str]]:
    """Read the ``| 次数 | 项目 | 值 |`` reward table out of a note body.

    The header row names the columns; the separator row is skipped. Only the
    first table in the body is considered.
    """
    rows: list[dict[str, str]] = []
    header: list[str] | None = None
    in_table = False
    for raw in body.splitlines():
        line = raw.strip()
        if not line.startswith("|"):
            if in_table:
                break
            continue
        in_table = True
        cells = [cell.strip() for cell in line.strip("|").split("|")]
        if header is None:
            header = cells
            continue
        if _TABLE_SEPARATOR_RE.match(line):
            continue
        if not any(cells):
            continue
        rows.append(dict(zip(header, cells)))
    return rows


@dataclass(frozen=True)
class RefreshSpec:
    """Undecoded refresh policy text, parsed when a due time is evaluated."""

    mode: str = ""
    schedule: str = ""
    interval: str = ""
    interval_base: str = ""


@dataclass
class Task:
    """A recurring task note."""

    doc_id: str
    uuid: str
    status: TaskStatus = TaskStatus.IN_PROGRESS
    completion_count: int = 0
    refresh: RefreshSpec = field(default_factory=RefreshSpec)
    current_cycle_start: datetime | None = None
    next_due_at: datetime | None = None
    last_completed_at: datetime | None = None
    reward_rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def title(self) -> str:
        name = self.doc_id.rsplit("/", 1)[-1]
        return name[:-3] if name.endswith(".md") else name

    @property
    def is_completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    @classmethod
    def from_frontmatter(cls, doc_id: str, data: dict[str, Any], body: str = "") -> Task:
        task_uuid = _as_text(data.get(KEY_UUID))
        if not task_uuid:
            raise ParseError("Task note has no uuid", doc_id=doc_id)

        raw_status = _as_text(data.get(KEY_STATUS))
        if not raw_status:
            status = TaskStatus.IN_PROGRESS
        else:
            try:
                status = TaskStatus(raw_status)
            except ValueError as exc:
                raise ParseError(f"Unknown task status {raw_status!r}", doc_id=doc_id) from exc

        rows = data.get(KEY_REWARDS)
        if rows is None:
            reward_rows: list[dict[str, Any]] = list(table_rows_from_body(body))
        elif isinstance(rows, list):
            reward_rows = [row if isinstance(row, dict) else {"raw": row} for row in rows]
        else:
            raise ParseError(f"{KEY_REWARDS} must be a list of rows", doc_id=doc_id)

        try:
            count = as_int(data.get(KEY_COMPLETIONS), 0, KEY_COMPLETIONS)
            if count < 0:
                raise ParseError(f"Negative completion count {count}")
            return cls(
                doc_id=doc_id,
                uuid=task_uuid,
                status=status,
                completion_count=count,
                refresh=RefreshSpec(
                    mode=_as_text(data.get(KEY_REFRESH_MODE)),
                    schedule=_as_text(data.get(KEY_REFRESH_TIME)),
                    interval=_as_text(data.get(KEY_REFRESH_INTERVAL)),
                    interval_base=_as_text(data.get(KEY_INTERVAL_BASE)),
                ),
                current_cycle_start=parse_timestamp(data.get(KEY_CYCLE_START), KEY_CYCLE_START),
                next_due_at=parse_timestamp(data.get(KEY_NEXT_DUE), KEY_NEXT_DUE),
                last_completed_at=parse_timestamp(data.get(KEY_LAST_COMPLETED), KEY_LAST_COMPLETED),
                reward_rows=reward_rows,
            )
        except ParseError as exc:
            exc.doc_id = doc_id
            raise

    def reward_rules(self) -> tuple[list[RewardRule], list[ParseError]]:
        return parse_reward_table(self.reward_rows)

    def lifecycle_fields(self) -> dict[str, Any]:
        """Frontmatter fields owned by the refresh state machine."""
        return {
            KEY_STATUS: self.status.value,
            KEY_COMPLETIONS: self.completion_count,
            KEY_CYCLE_START: format_timestamp(self.current_cycle_start),
            KEY_NEXT_DUE: format_timestamp(self.next_due_at),
            KEY_LAST_COMPLETED: format_timestamp(self.last_completed_at),
        }


@dataclass(frozen=True)
class ProgressionEntity:
    """Leveling state of the character or of one skill."""

    kind: EntityKind
    name: str
    level: int = 1
    current_experience: int = 0
    experience_threshold: int = CHARACTER_THRESHOLD_INCREMENT
    threshold_increment: int = CHARACTER_THRESHOLD_INCREMENT

    @property
    def experience_key(self) -> str:
        return KEY_CHARACTER_EXP if self.kind is EntityKind.CHARACTER else KEY_SKILL_EXP

    @classmethod
    def from_frontmatter(cls, kind: EntityKind, name: str, data: dict[str, Any]) -> ProgressionEntity:
        increment = (
            CHARACTER_THRESHOLD_INCREMENT if kind is EntityKind.CHARACTER else SKILL_THRESHOLD_INCREMENT
        )
        exp_key = KEY_CHARACTER_EXP if kind is EntityKind.CHARACTER else KEY_SKILL_EXP
        entity = cls(
            kind=kind,
            name=name,
            level=as_int(data.get(KEY_LEVEL), 1, KEY_LEVEL),
            current_experience=as_int(data.get(exp_key), 0, exp_key),
            experience_threshold=as_int(data.get(KEY_THRESHOLD), increment, KEY_THRESHOLD),
            threshold_increment=increment,
        )
        if entity.level < 1 or entity.current_experience < 0 or entity.experience_threshold < 1:
            raise ParseError(f"Out-of-range progression fields for {kind.value} {name!r}")
        return entity

    def to_frontmatter(self) -> dict[str, int]:
        return {
            self.experience_key: self.current_experience,
            KEY_LEVEL: self.level,
            KEY_THRESHOLD: self.experience_threshold,
        }


@dataclass
class CompletionRecord:
    """Ledger entry for one completion of one task.

    The row is claimed as ``pending`` before any reward is paid and settled
    with the applied rewards afterwards. A row left pending marks a payout
    that was interrupted.
    """

    task_uuid: str
    completion_count: int
    completed_at: datetime
    rewards: list[dict[str, Any]] = field(default_factory=list)
    status: str = COMPLETION_SETTLED

    @property
    def is_pending(self) -> bool:
        return self.status == COMPLETION_PENDING

    @classmethod
    def from_row(cls, data: dict[str, Any]) -> CompletionRecord:
        return cls(
            task_uuid=data.get("task_uuid", ""),
            completion_count=int(data.get("completion_count", 0)),
            completed_at=parse_timestamp(data.get("completed_at"), "completed_at") or datetime.min,
            rewards=json.loads(data.get("rewards") or "[]"),
            status=data.get("status") or COMPLETION_SETTLED,
        )


class RewardKind(str, Enum):
    EXPERIENCE = "经验值"
    ATTRIBUTE = "属性"
    RESOURCE = "资源"
    SKILL_EXPERIENCE = "技能"


_FREQUENCY_RE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class RewardRule:
    """One row of a task's reward table: every Nth completion, add ``amount``."""

    trigger_frequency: int
    target_kind: RewardKind
    target_name: str = ""
    amount: int = 0

    @property
    def label(self) -> str:
        if self.target_kind is RewardKind.EXPERIENCE:
            return self.target_kind.value
        return f"{self.target_kind.value}/{self.target_name}"

    def fires_on(self, completion_count: int) -> bool:
        return completion_count % self.trigger_frequency == 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RewardRule:
        raw_freq = _as_text(row.get("次数"))
        raw_target = _as_text(row.get("项目"))
        raw_amount = row.get("值")
        if not raw_freq or not raw_target or _as_text(raw_amount) == "":
            raise ParseError(f"Incomplete reward row: {row!r}")

        match = _FREQUENCY_RE.search(raw_freq)
        if not match or int(match.group(1)) < 1:
            raise ParseError(f"Invalid reward frequency: {raw_freq!r}")
        frequency = int(match.group(1))

        amount = as_int(raw_amount, 0, "值")

        if raw_target == RewardKind.EXPERIENCE.value:
            return cls(frequency, RewardKind.EXPERIENCE, "", amount)
        prefix, _, name = raw_target.partition("/")
        name = name.strip()
        try:
            kind = RewardKind(prefix.strip())
        except ValueError as exc:
            raise ParseError(f"Unknown reward target: {raw_target!r}") from exc
        if kind is RewardKind.EXPERIENCE or not name:
            raise ParseError(f"Unknown reward target: {raw_target!r}")
        return cls(frequency, kind, name, amount)


def parse_reward_table(rows: list[dict[str, Any]]) -> tuple[list[RewardRule], list[ParseError]]:
    """Decode reward rows; malformed rows are dropped and reported."""
    rules: list[RewardRule] = []
    errors: list[ParseError] = []
    for row in rows:
        try:
            rules.append(RewardRule.from_row(row))
        except ParseError as exc:
            errors.append(exc)
    return rules, errors
