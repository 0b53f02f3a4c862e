"""Recurrence engine: expands a recurring series into concrete occurrences.

Occurrences are never persisted: every call walks forward from the template
event's start in rule steps, skipping exception dates, until the window end,
the rule's ``until``, the rule's occurrence cap or the caller's ``max_count``
is reached.

Stepping rules:
- DAILY / WEEKLY / MONTHLY / YEARLY step in the template's local wall time,
  so a 19:00 America/Sao_Paulo event stays at 19:00 across DST changes.
- MONTHLY and YEARLY steps are computed from the anchor with
  ``relativedelta`` (anchor + k * interval months). A rule anchored on the
  31st therefore lands on the last day of shorter months (Feb 28/29, Apr 30)
  and returns to the 31st afterwards instead of drifting.
- LUNAR steps by ``interval`` mean synodic months in absolute time.

This module has no database access.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterator, Optional

import pytz
from dateutil.relativedelta import relativedelta

from event_reminders.database import ensure_utc, utcnow
from event_reminders.models.event import EventStatus
from event_reminders.models.recurring_series import Frequency, LunarPhase
from event_reminders.services.series_exceptions import exception_dates

logger = logging.getLogger(__name__)

SYNODIC_MONTH = timedelta(days=29.530588853)
MAX_INTERVAL = 999
# Consecutive rule periods without a single candidate before the walk gives up
MAX_EMPTY_PERIODS = 1000

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
_FREQUENCY_UNITS = {
    Frequency.daily: ("Daily", "day"),
    Frequency.weekly: ("Weekly", "week"),
    Frequency.monthly: ("Monthly", "month"),
    Frequency.yearly: ("Yearly", "year"),
    Frequency.lunar: ("Every lunar month", "lunar month"),
}


class RecurrenceError(ValueError):
    """Raised when an expansion request is invalid or unbounded."""


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    until: Optional[datetime] = None
    count: Optional[int] = None
    by_weekday: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()
    lunar_phase: Optional[LunarPhase] = None

    @classmethod
    def from_series(cls, series: Any) -> "RecurrenceRule":
        return cls(
            frequency=Frequency(series.frequency),
            interval=series.interval or 1,
            until=ensure_utc(series.until) if series.until else None,
            count=series.max_occurrences,
            by_weekday=tuple(sorted(set(series.by_weekday or []))),
            by_month_day=tuple(sorted(set(series.by_month_day or []))),
            by_month=tuple(sorted(set(series.by_month or []))),
            lunar_phase=series.lunar_phase,
        )

    @property
    def is_bounded(self) -> bool:
        return self.until is not None or self.count is not None


@dataclass
class Occurrence:
    """A computed, non-persisted instance of a series."""

    series_id: Optional[str]
    template_event_id: Optional[str]
    start: datetime
    end: datetime
    local_date: date
    status: EventStatus
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    timezone: str = "UTC"
    mode: Optional[str] = None
    is_public: bool = True
    is_modified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "series_id": self.series_id,
            "event_id": self.template_event_id,
            "title": self.title,
            "description": self.description,
            "start_time_utc": self.start,
            "end_time_utc": self.end,
            "date": self.local_date,
            "timezone": self.timezone,
            "location": self.location,
            "virtual_link": self.virtual_link,
            "mode": self.mode,
            "is_public": self.is_public,
            "status": self.status.value,
            "is_modified": self.is_modified,
        }


def _localize(tz, naive_local: datetime) -> datetime:
    """Attach ``tz`` to a wall-clock time and return it in UTC.

    Times falling in a DST gap are pushed forward by ``normalize``.
    """
    return tz.normalize(tz.localize(naive_local)).astimezone(timezone.utc)


def _period_start(rule: RecurrenceRule, anchor_local: datetime, anchor_utc: datetime, tz, k: int) -> datetime:
    """Naive local start of the k-th rule period, counted from the anchor."""
    step = k * rule.interval
    if rule.frequency == Frequency.daily:
        return anchor_local + timedelta(days=step)
    if rule.frequency == Frequency.weekly:
        return anchor_local + timedelta(weeks=step)
    if rule.frequency == Frequency.monthly:
        return anchor_local + relativedelta(months=step)
    if rule.frequency == Frequency.yearly:
        return anchor_local + relativedelta(years=step)
    # LUNAR: absolute time, then back to the local wall clock
    return (anchor_utc + SYNODIC_MONTH * step).astimezone(tz).replace(tzinfo=None)


def _period_candidates(rule: RecurrenceRule, period_local: datetime) -> list[datetime]:
    if rule.frequency == Frequency.weekly and rule.by_weekday:
        week_start = period_local - timedelta(days=period_local.weekday())
        return [week_start + timedelta(days=wd) for wd in rule.by_weekday]
    if rule.frequency == Frequency.monthly and rule.by_month_day:
        days_in_month = calendar.monthrange(period_local.year, period_local.month)[1]
        return [period_local.replace(day=d) for d in rule.by_month_day if d <= days_in_month]
    return [period_local]


def _matches_filters(rule: RecurrenceRule, candidate: datetime) -> bool:
    if rule.by_month and candidate.month not in rule.by_month:
        return False
    if rule.by_weekday and rule.frequency != Frequency.weekly and candidate.weekday() not in rule.by_weekday:
        return False
    if rule.by_month_day and rule.frequency != Frequency.monthly and candidate.day not in rule.by_month_day:
        return False
    return True


def _template_tz(template: Any):
    return pytz.timezone(template.timezone or "UTC")


def iter_slots(series: Any, until_bound: Optional[datetime] = None) -> Iterator[tuple[datetime, date]]:
    """Yield every slot of the rule as ``(utc_start, local_date)``.

    Exceptions are not applied here. The walk stops at ``until_bound``, the
    rule's ``until`` or the rule's occurrence cap; callers must bound it
    themselves otherwise.
    """
    template = series.parent_event
    rule = RecurrenceRule.from_series(series)
    tz = _template_tz(template)
    anchor_utc = ensure_utc(template.start_time_utc)
    anchor_local = anchor_utc.astimezone(tz).replace(tzinfo=None)

    bounds = [b for b in (until_bound, rule.until) if b is not None]
    hard_end = min(bounds) if bounds else None

    emitted = 0
    empty_periods = 0
    k = 0
    while True:
        period_local = _period_start(rule, anchor_local, anchor_utc, tz, k)
        k += 1
        candidates = [
            c for c in _period_candidates(rule, period_local)
            if c >= anchor_local and _matches_filters(rule, c)
        ]
        if not candidates:
            if hard_end is not None and _localize(tz, period_local) > hard_end:
                return
            empty_periods += 1
            if empty_periods >= MAX_EMPTY_PERIODS:
                logger.warning(
                    "Series %s produced no slot in %d consecutive periods; stopping expansion",
                    getattr(series, "series_id", None), MAX_EMPTY_PERIODS,
                )
                return
            continue
        empty_periods = 0
        for candidate in candidates:
            start_utc = _localize(tz, candidate)
            if hard_end is not None and start_utc > hard_end:
                return
            if rule.count is not None and emitted >= rule.count:
                return
            emitted += 1
            yield start_utc, candidate.date()


def expand(
    series: Any,
    window_start: Optional[datetime],
    window_end: Optional[datetime],
    max_count: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Iterator[Occurrence]:
    """Lazily expand ``series`` into occurrences inside ``[window_start, window_end]``.

    Args:
        series: RecurringSeries with its ``parent_event`` loaded.
        window_start: Inclusive lower bound (None: from the template start).
        window_end: Inclusive upper bound (None: unbounded).
        max_count: Cap on the number of occurrences returned.
        now: Reference time for the derived status (defaults to the clock).

    Raises:
        RecurrenceError: For an inverted window, a non-positive ``max_count``,
            or an unbounded window on a rule with no end and no cap.
    """
    if window_start is not None:
        window_start = ensure_utc(window_start)
    if window_end is not None:
        window_end = ensure_utc(window_end)
    if window_start is not None and window_end is not None and window_start > window_end:
        raise RecurrenceError("window_start must not be after window_end")
    if max_count is not None and max_count <= 0:
        raise RecurrenceError("max_count must be greater than 0")
    if window_end is None and max_count is None and not RecurrenceRule.from_series(series).is_bounded:
        raise RecurrenceError("Refusing to expand an unbounded rule over an unbounded window without max_count")

    return _expand(series, window_start, window_end, max_count, now)


def _expand(series, window_start, window_end, max_count, now) -> Iterator[Occurrence]:
    template = series.parent_event
    now = ensure_utc(now) if now else utcnow()
    duration = ensure_utc(template.end_time_utc) - ensure_utc(template.start_time_utc)
    skipped = exception_dates(series)

    returned = 0
    for start, local_day in iter_slots(series, window_end):
        if window_start is not None and start < window_start:
            continue
        if local_day in skipped:
            continue
        end = start + duration
        yield Occurrence(
            series_id=series.series_id,
            template_event_id=template.event_id,
            start=start,
            end=end,
            local_date=local_day,
            status=EventStatus.completed if end < now else EventStatus.published,
            title=template.title,
            description=template.description,
            location=template.location,
            virtual_link=template.virtual_link,
            timezone=template.timezone or "UTC",
            mode=template.mode.value if template.mode else None,
            is_public=bool(template.is_public),
        )
        returned += 1
        if max_count is not None and returned >= max_count:
            return


def local_day_bounds(tz_name: str, day: date) -> tuple[datetime, datetime]:
    """UTC instants of local midnight at the start of ``day`` and of the next day."""
    tz = pytz.timezone(tz_name or "UTC")
    start = _localize(tz, datetime.combine(day, time.min))
    end = _localize(tz, datetime.combine(day + timedelta(days=1), time.min))
    return start, end


def slot_on(series: Any, day: date) -> Optional[datetime]:
    """UTC start of the rule slot on local ``day``, ignoring exceptions."""
    _, day_end = local_day_bounds(series.parent_event.timezone, day)
    for start, local_day in iter_slots(series, day_end):
        if local_day == day:
            return start
        if local_day > day:
            return None
    return None


def occurs_on(series: Any, day: date) -> bool:
    return slot_on(series, day) is not None


def validate_rule(rule: RecurrenceRule) -> list[str]:
    """Return human readable problems with ``rule`` (empty when valid)."""
    errors: list[str] = []
    if rule.interval is None or rule.interval < 1 or rule.interval > MAX_INTERVAL:
        errors.append(f"interval must be between 1 and {MAX_INTERVAL}")
    if rule.count is not None and rule.count < 1:
        errors.append("count must be greater than 0")
    if rule.until is not None and rule.count is not None:
        errors.append("count and until cannot both be set")
    if rule.frequency == Frequency.weekly and rule.by_month_day:
        errors.append("by_month_day is not valid for WEEKLY recurrence")
    if rule.frequency == Frequency.daily and (rule.by_weekday or rule.by_month_day):
        errors.append("by_weekday and by_month_day are not valid for DAILY recurrence")
    if rule.frequency == Frequency.lunar and (rule.by_weekday or rule.by_month_day or rule.by_month):
        errors.append("LUNAR recurrence does not accept weekday, month-day or month constraints")
    errors.extend(f"invalid weekday: {d}" for d in rule.by_weekday if not 0 <= d <= 6)
    errors.extend(f"invalid day of month: {d}" for d in rule.by_month_day if not 1 <= d <= 31)
    errors.extend(f"invalid month: {m}" for m in rule.by_month if not 1 <= m <= 12)
    return errors


def describe_rule(rule: RecurrenceRule) -> str:
    """Readable summary, e.g. ``Every 2 weeks on Monday, Wednesday, 10 times``."""
    label, unit = _FREQUENCY_UNITS[rule.frequency]
    text = label if rule.interval == 1 else f"Every {rule.interval} {unit}s"
    if rule.frequency == Frequency.lunar:
        phase = (rule.lunar_phase or LunarPhase.full).value.lower()
        text += f" ({phase} moon)"
    if rule.by_weekday:
        text += " on " + ", ".join(WEEKDAY_NAMES[d] for d in rule.by_weekday if 0 <= d <= 6)
    if rule.by_month_day:
        text += " on day " + ", ".join(str(d) for d in rule.by_month_day)
    if rule.by_month:
        text += " in " + ", ".join(calendar.month_name[m] for m in rule.by_month if 1 <= m <= 12)
    if rule.count:
        text += f", {rule.count} times"
    elif rule.until:
        text += f", until {rule.until.date().isoformat()}"
    return text
