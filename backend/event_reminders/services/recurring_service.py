"""Recurring series service.

A series is a template Event plus a recurrence rule. Instances are never
stored: they are expanded on demand by the recurrence engine and merged
with the standalone replacement events created by ``modify`` exceptions.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, joinedload

from event_reminders.config import settings
from event_reminders.database import ensure_utc, utcnow
from event_reminders.models.event import Event, EventStatus
from event_reminders.models.recurring_series import Frequency, LunarPhase, RecurringSeries
from event_reminders.services import event_service
from event_reminders.services.recurrence_engine import (
    RecurrenceError,
    RecurrenceRule,
    describe_rule,
    expand,
    slot_on,
    validate_rule,
)
from event_reminders.services.series_exceptions import ExceptionMode, add_exception, exception_dates

logger = logging.getLogger(__name__)

_TEMPLATE_FIELDS = ("title", "description", "location", "virtual_link", "is_public", "max_attendees", "tags")


def _rule_from_input(recurrence: Any) -> RecurrenceRule:
    lunar_phase = recurrence.lunar_phase
    if recurrence.freq == Frequency.lunar and lunar_phase is None:
        lunar_phase = LunarPhase.full
    return RecurrenceRule(
        frequency=recurrence.freq,
        interval=recurrence.interval,
        until=ensure_utc(recurrence.until) if recurrence.until else None,
        count=recurrence.count,
        by_weekday=tuple(sorted(set(recurrence.by_weekday or []))),
        by_month_day=tuple(sorted(set(recurrence.by_month_day or []))),
        by_month=tuple(sorted(set(recurrence.by_month or []))),
        lunar_phase=lunar_phase,
    )


def _rule_errors(rule: RecurrenceRule, start_utc: datetime) -> list[str]:
    errors = validate_rule(rule)
    if rule.until is not None and rule.until <= ensure_utc(start_utc):
        errors.append("until must be after the first occurrence")
    return errors


def _apply_rule(series: RecurringSeries, rule: RecurrenceRule) -> None:
    series.frequency = rule.frequency
    series.interval = rule.interval
    series.until = rule.until
    series.max_occurrences = rule.count
    series.by_weekday = list(rule.by_weekday) or None
    series.by_month_day = list(rule.by_month_day) or None
    series.by_month = list(rule.by_month) or None
    series.lunar_phase = rule.lunar_phase


def series_detail(series: RecurringSeries) -> dict[str, Any]:
    return {
        "series": series,
        "parent_event": series.parent_event,
        "description": describe_rule(RecurrenceRule.from_series(series)),
        "stats": {
            "is_active": bool(series.is_active),
            "exceptions_count": len(series.exceptions or []),
        },
    }


# ── Lookups / authorization ───────────────────────────────────


def get_series_or_404(db: Session, series_id: str) -> RecurringSeries:
    series = (
        db.query(RecurringSeries)
        .options(joinedload(RecurringSeries.parent_event))
        .filter(RecurringSeries.series_id == series_id)
        .first()
    )
    if not series:
        raise HTTPException(status_code=404, detail="Recurring series not found")
    return series


def _check_owner(series: RecurringSeries, user_id: str) -> None:
    if series.parent_event.creator_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the series owner may do this.",
        )


def _check_active(series: RecurringSeries) -> None:
    if not series.is_active:
        raise HTTPException(status_code=400, detail="Recurring series is not active")


# ── CRUD ──────────────────────────────────────────────────────


def create_series(db: Session, creator_id: str, payload: Any) -> RecurringSeries:
    """Create the template event and its series in one transaction."""
    rule = _rule_from_input(payload.recurrence)
    errors = event_service.event_field_errors(
        payload.start_time_utc, payload.end_time_utc, payload.timezone, payload.mode,
        payload.location, payload.virtual_link, payload.access_type, payload.price,
        payload.free_tiers, require_future=True,
    )
    errors.extend(_rule_errors(rule, payload.start_time_utc))
    event_service.raise_validation(errors, "Invalid recurring event")

    try:
        parent = event_service.build_event(creator_id, payload, EventStatus.published)
        db.add(parent)
        db.flush()
        series = RecurringSeries(parent_event_id=parent.event_id, exceptions=[], is_active=True)
        _apply_rule(series, rule)
        db.add(series)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to create recurring series for %s", creator_id)
        raise

    db.refresh(series)
    logger.info(
        "Created recurring series %s (%s) with parent event %s",
        series.series_id, describe_rule(rule), series.parent_event_id,
    )
    return series


def list_series(db: Session, user_id: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
    """The caller's active series, newest first."""
    query = (
        db.query(RecurringSeries)
        .join(Event, Event.event_id == RecurringSeries.parent_event_id)
        .options(joinedload(RecurringSeries.parent_event))
        .filter(Event.creator_id == user_id, RecurringSeries.is_active.is_(True))
    )
    total = query.count()
    items = (
        query.order_by(RecurringSeries.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [series_detail(s) for s in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "has_more": page * limit < total,
        },
    }


def get_series(db: Session, series_id: str, user_id: str) -> RecurringSeries:
    series = get_series_or_404(db, series_id)
    _check_owner(series, user_id)
    return series


def update_series(db: Session, series_id: str, user_id: str, updates: dict[str, Any], recurrence: Any = None) -> RecurringSeries:
    """Update template fields and/or the rule; applied together or not at all."""
    series = get_series(db, series_id, user_id)
    _check_active(series)
    parent = series.parent_event

    rule = _rule_from_input(recurrence) if recurrence is not None else None
    errors = _rule_errors(rule, parent.start_time_utc) if rule is not None else []

    for field in _TEMPLATE_FIELDS:
        if field in updates:
            setattr(parent, field, updates[field])
    errors.extend(event_service.event_field_errors(
        parent.start_time_utc, parent.end_time_utc, parent.timezone, parent.mode,
        parent.location, parent.virtual_link, parent.access_type, parent.price, parent.free_tiers or [],
    ))
    if errors:
        db.rollback()
        event_service.raise_validation(errors, "Invalid recurring event")

    if rule is not None:
        _apply_rule(series, rule)
    now = utcnow()
    parent.version += 1
    parent.updated_at = now
    series.updated_at = now
    db.commit()
    db.refresh(series)
    logger.info("Updated recurring series %s", series_id)
    return series


def deactivate_series(db: Session, series_id: str, user_id: str) -> RecurringSeries:
    """Stop the series; the template event and its history are kept."""
    series = get_series(db, series_id, user_id)
    if series.is_active:
        series.is_active = False
        series.updated_at = utcnow()
        db.commit()
        db.refresh(series)
        logger.info("Deactivated recurring series %s", series_id)
    return series


# ── Instances ─────────────────────────────────────────────────


def _replacement_events(db: Session, series_id: str) -> list[Event]:
    return (
        db.query(Event)
        .filter(Event.series_id == series_id, Event.original_date.isnot(None))
        .all()
    )


def _replacement_instance(event: Event, now: datetime) -> dict[str, Any]:
    event_status = EventStatus(event.status)
    if event_status == EventStatus.published and ensure_utc(event.end_time_utc) < now:
        event_status = EventStatus.completed
    return {
        "series_id": event.series_id,
        "event_id": event.event_id,
        "title": event.title,
        "description": event.description,
        "start_time_utc": ensure_utc(event.start_time_utc),
        "end_time_utc": ensure_utc(event.end_time_utc),
        "date": event.original_date,
        "timezone": event.timezone,
        "location": event.location,
        "virtual_link": event.virtual_link,
        "mode": event.mode.value if event.mode else None,
        "is_public": bool(event.is_public),
        "status": event_status.value,
        "is_modified": True,
    }


def list_instances(
    db: Session,
    series_id: str,
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    series = get_series_or_404(db, series_id)
    parent = series.parent_event
    if parent.creator_id != user_id and not parent.is_public:
        raise HTTPException(status_code=403, detail="You do not have access to this series")

    now = utcnow()
    start = ensure_utc(start) if start else now
    end = ensure_utc(end) if end else start + timedelta(days=settings.INSTANCES_DEFAULT_WINDOW_DAYS)
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    try:
        instances = [
            o.to_dict()
            for o in expand(series, start, end, max_count=settings.MATERIALIZE_MAX_OCCURRENCES, now=now)
        ]
    except RecurrenceError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    replacements = _replacement_events(db, series_id)
    instances.extend(
        _replacement_instance(e, now)
        for e in replacements
        if e.status != EventStatus.cancelled and start <= ensure_utc(e.start_time_utc) <= end
    )
    instances.sort(key=lambda i: i["start_time_utc"])

    skipped = exception_dates(series)
    replaced = {e.original_date for e in replacements if e.status != EventStatus.cancelled}
    upcoming = sum(1 for i in instances if i["start_time_utc"] >= now)
    total = len(instances)
    page = instances[offset:offset + limit]

    return {
        "instances": page,
        "counts": {
            "total": total,
            "upcoming": upcoming,
            "past": total - upcoming,
            "exceptions": len(skipped),
            "cancelled": len(skipped - replaced),
        },
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(page) < total,
        },
    }


def add_instance_exception(db: Session, series_id: str, user_id: str, body: Any) -> dict[str, Any]:
    """Cancel one instance, or replace it with a standalone modified event."""
    series = get_series(db, series_id, user_id)
    _check_active(series)
    day: date = body.date

    slot_start = slot_on(series, day)
    if slot_start is None:
        raise HTTPException(status_code=400, detail=f"The series has no occurrence on {day.isoformat()}")

    replacement = (
        db.query(Event)
        .filter(Event.series_id == series_id, Event.original_date == day, Event.status != EventStatus.cancelled)
        .first()
    )

    if body.action == "cancel":
        try:
            add_exception(series, day, ExceptionMode.cancel)
            if replacement is not None:
                replacement.status = EventStatus.cancelled
                replacement.cancelled_at = utcnow()
                replacement.cancel_reason = "Occurrence cancelled"
                replacement.version += 1
            series.updated_at = utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(series)
        return {"action": "cancel", "date": day, "series": series, "replacement_event": None}

    if replacement is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Occurrence on {day.isoformat()} has already been modified",
        )

    template = series.parent_event
    duration = ensure_utc(template.end_time_utc) - ensure_utc(template.start_time_utc)
    new_start = ensure_utc(body.start_time_utc) if body.start_time_utc else slot_start
    new_end = ensure_utc(body.end_time_utc) if body.end_time_utc else new_start + duration
    if new_start >= new_end:
        raise HTTPException(status_code=400, detail="start_time_utc must be before end_time_utc")

    try:
        event = Event(
            title=body.title or template.title,
            description=body.description if body.description is not None else template.description,
            start_time_utc=new_start,
            end_time_utc=new_end,
            timezone=template.timezone,
            location=body.location if body.location is not None else template.location,
            virtual_link=body.virtual_link if body.virtual_link is not None else template.virtual_link,
            mode=template.mode,
            is_public=template.is_public,
            access_type=template.access_type,
            price=template.price,
            free_tiers=list(template.free_tiers or []),
            max_attendees=template.max_attendees,
            tags=list(template.tags or []),
            creator_id=template.creator_id,
            status=EventStatus.published,
            series_id=series.series_id,
            original_date=day,
            version=1,
        )
        db.add(event)
        add_exception(series, day, ExceptionMode.replace)
        series.updated_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(series)
    db.refresh(event)
    logger.info("Series %s: occurrence on %s replaced by event %s", series_id, day, event.event_id)
    return {"action": "modify", "date": day, "series": series, "replacement_event": event}
