"""Exception store: per-series list of excluded occurrence dates.

The list lives on ``RecurringSeries.exceptions`` as sorted, deduplicated
``YYYY-MM-DD`` strings in the template event's timezone. It only grows:
there is no removal operation. A ``replace`` exception is recorded exactly
like a ``cancel``; the caller persists the standalone replacement event.
"""
import enum
import logging
from datetime import date, datetime
from typing import Any, Union

import pytz

from event_reminders.database import ensure_utc

logger = logging.getLogger(__name__)


class ExceptionMode(str, enum.Enum):
    cancel = "cancel"
    replace = "replace"


def normalize_exception_date(value: Union[date, datetime, str], tz_name: str = "UTC") -> date:
    """Truncate ``value`` to a day in the series' local calendar."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value) if "T" in value else date.fromisoformat(value)
    if isinstance(value, datetime):
        return ensure_utc(value).astimezone(pytz.timezone(tz_name or "UTC")).date()
    return value


def exception_dates(series: Any) -> set[date]:
    return {date.fromisoformat(d) for d in (series.exceptions or [])}


def has_exception(series: Any, value: Union[date, datetime, str]) -> bool:
    return normalize_exception_date(value, _series_tz(series)) in exception_dates(series)


def add_exception(series: Any, value: Union[date, datetime, str], mode: ExceptionMode) -> Any:
    """Record ``value`` as an exception date on ``series``; idempotent."""
    mode = ExceptionMode(mode)
    day = normalize_exception_date(value, _series_tz(series))
    current = list(series.exceptions or [])
    if day.isoformat() in current:
        logger.debug("Series %s already has an exception on %s", series.series_id, day)
        return series
    # Reassign so the JSON column is flagged dirty
    series.exceptions = sorted(set(current) | {day.isoformat()})
    logger.info("Series %s: %s exception added for %s", series.series_id, mode.value, day)
    return series


def _series_tz(series: Any) -> str:
    parent = getattr(series, "parent_event", None)
    return parent.timezone if parent is not None and parent.timezone else "UTC"
