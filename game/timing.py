"""Refresh policies and next-due evaluation.

Three policy families are understood:

* 定时 (scheduled): ``每天8时``, ``每周一``, ``每月15日``
* 固定间隔 (interval): ``2小时``, ``3天``, ``1周``, ``1月`` counted from the last
  completion or from the start of the current cycle
* 每次指定时间 (manual): the next due time is supplied from outside

All arithmetic is on calendar units. Adding months clamps to the last day of
the target month.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol, Union

from vault.models import RefreshSpec

from .errors import ParseError

SCHEDULED_HOUR = 5

_INTERVAL_RE = re.compile(r"(\d+)\s*(小时|天|周|月)")
_DAILY_RE = re.compile(r"每天(?:(\d{1,2})[时点])?")
_WEEKLY_RE = re.compile(r"每周(?:星期|周)?([一二三四五六日天])")
_MONTHLY_RE = re.compile(r"每月(?:(\d{1,2})[日号])?")

_WEEKDAYS = {"一": 0, "二": 1, "三": 2, "四": 3, "五": 4, "六": 5, "日": 6, "天": 6}


class RefreshMode(str, Enum):
    SCHEDULED = "定时"
    INTERVAL = "固定间隔"
    MANUAL = "每次指定时间"


class IntervalBase(str, Enum):
    LAST_COMPLETION = "上一次完成时间"
    LAST_REFRESH = "上一次刷新时间"


class IntervalUnit(str, Enum):
    HOURS = "小时"
    DAYS = "天"
    WEEKS = "周"
    MONTHS = "月"


class NeedsInput(Enum):
    """Marker returned when the next due time must come from a prompt."""

    TOKEN = "needs_input"

    def __repr__(self) -> str:
        return "NEEDS_INPUT"


NEEDS_INPUT = NeedsInput.TOKEN


@dataclass(frozen=True)
class DailySchedule:
    hour: int


@dataclass(frozen=True)
class WeeklySchedule:
    weekday: int  # Monday == 0


@dataclass(frozen=True)
class MonthlySchedule:
    day: int


@dataclass(frozen=True)
class IntervalPolicy:
    amount: int
    unit: IntervalUnit
    base: IntervalBase = IntervalBase.LAST_COMPLETION


@dataclass(frozen=True)
class ManualPolicy:
    pass


Policy = Union[DailySchedule, WeeklySchedule, MonthlySchedule, IntervalPolicy, ManualPolicy]


@dataclass(frozen=True)
class ReferenceTimes:
    now: datetime
    last_completion: datetime | None = None
    cycle_start: datetime | None = None


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)


class FixedClock:
    """Clock pinned to a settable instant."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current += delta
        return self.current


# ── Parsing ──────────────────────────────────────────────────────


def parse_interval(text: str) -> tuple[int, IntervalUnit]:
    match = _INTERVAL_RE.fullmatch((text or "").strip())
    if not match:
        raise ParseError(f"Invalid refresh interval: {text!r}")
    amount = int(match.group(1))
    if amount < 1:
        raise ParseError(f"Refresh interval must be positive: {text!r}")
    return amount, IntervalUnit(match.group(2))


def parse_schedule(text: str) -> DailySchedule | WeeklySchedule | MonthlySchedule:
    raw = (text or "").strip()

    match = _DAILY_RE.fullmatch(raw)
    if match:
        hour = int(match.group(1)) if match.group(1) else SCHEDULED_HOUR
        if not 0 <= hour <= 23:
            raise ParseError(f"Hour out of range in schedule: {text!r}")
        return DailySchedule(hour=hour)

    match = _WEEKLY_RE.fullmatch(raw)
    if match:
        return WeeklySchedule(weekday=_WEEKDAYS[match.group(1)])

    match = _MONTHLY_RE.fullmatch(raw)
    if match:
        day = int(match.group(1)) if match.group(1) else 1
        if not 1 <= day <= 31:
            raise ParseError(f"Day of month out of range in schedule: {text!r}")
        return MonthlySchedule(day=day)

    raise ParseError(f"Invalid refresh schedule: {text!r}")


def parse_policy(refresh: RefreshSpec) -> Policy:
    """Decode the refresh fields of a task note into a policy."""
    try:
        mode = RefreshMode(refresh.mode)
    except ValueError as exc:
        raise ParseError(f"Unknown refresh mode: {refresh.mode!r}") from exc

    if mode is RefreshMode.MANUAL:
        return ManualPolicy()
    if mode is RefreshMode.SCHEDULED:
        return parse_schedule(refresh.schedule)

    amount, unit = parse_interval(refresh.interval)
    if not refresh.interval_base:
        base = IntervalBase.LAST_COMPLETION
    else:
        try:
            base = IntervalBase(refresh.interval_base)
        except ValueError as exc:
            raise ParseError(f"Unknown interval base: {refresh.interval_base!r}") from exc
    return IntervalPolicy(amount=amount, unit=unit, base=base)


# ── Calendar arithmetic ──────────────────────────────────────────


def _clamped_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def add_months(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    return moment.replace(year=year, month=month, day=_clamped_day(year, month, moment.day))


def add_interval(moment: datetime, amount: int, unit: IntervalUnit) -> datetime:
    if unit is IntervalUnit.HOURS:
        return moment + timedelta(hours=amount)
    if unit is IntervalUnit.DAYS:
        return moment + timedelta(days=amount)
    if unit is IntervalUnit.WEEKS:
        return moment + timedelta(weeks=amount)
    return add_months(moment, amount)


def _next_daily(now: datetime, hour: int) -> datetime:
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _next_weekly(now: datetime, weekday: int) -> datetime:
    days_ahead = (weekday - now.weekday()) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(
        hour=SCHEDULED_HOUR, minute=0, second=0, microsecond=0
    )
    if candidate <= now:
        candidate += timedelta(weeks=1)
    return candidate


def _next_monthly(now: datetime, day: int) -> datetime:
    candidate = now.replace(
        day=_clamped_day(now.year, now.month, day),
        hour=SCHEDULED_HOUR,
        minute=0,
        second=0,
        microsecond=0,
    )
    if candidate <= now:
        following = add_months(candidate.replace(day=1), 1)
        candidate = following.replace(day=_clamped_day(following.year, following.month, day))
    return candidate


def compute_next_due(policy: Policy, refs: ReferenceTimes) -> datetime | NeedsInput:
    """Return the next due time for ``policy``, or ``NEEDS_INPUT`` for manual tasks.

    Interval policies only ever look at their anchor timestamp, so the result
    is independent of ``refs.now`` for them.
    """
    if isinstance(policy, ManualPolicy):
        return NEEDS_INPUT
    if isinstance(policy, DailySchedule):
        return _next_daily(refs.now, policy.hour)
    if isinstance(policy, WeeklySchedule):
        return _next_weekly(refs.now, policy.weekday)
    if isinstance(policy, MonthlySchedule):
        return _next_monthly(refs.now, policy.day)

    if policy.base is IntervalBase.LAST_REFRESH:
        anchor = refs.cycle_start
    else:
        anchor = refs.last_completion
    if anchor is None:
        raise ParseError(f"Interval task has no {policy.base.value}")
    return add_interval(anchor, policy.amount, policy.unit)
