"""Background reminder processor.

Each tick runs three steps, each isolated from the others' failures:

1. materialize - expand every active series over the look-ahead window into
   an in-memory cache (``upcoming_occurrences``). No reminder rows are
   created here; reminders are always user-authored.
2. dispatch - send due PENDING reminders through the notification fan-out,
   then mark them SENT, retry them on the next tick or mark them FAILED.
3. cleanup - delete SENT/FAILED rows older than the retention window.

Database work runs in the threadpool so a tick never blocks the event loop.

``processing`` holds the ids of reminders currently being dispatched and is
only touched on the loop thread. It guards overlapping ticks inside this
process only; two processors pointed at the same database can still send a
reminder twice.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session, joinedload

from event_reminders.database import ensure_utc, utcnow
from event_reminders.models.event import Event
from event_reminders.models.recurring_series import RecurringSeries
from event_reminders.models.reminder import Reminder, ReminderStatus, ReminderType
from event_reminders.services.notification_service import EventSummary, NotificationFanout
from event_reminders.services.recurrence_engine import Occurrence, RecurrenceError, expand

logger = logging.getLogger(__name__)


@dataclass
class ProcessorConfig:
    batch_size: int = 50
    tick_interval_ms: int = 60000
    max_retries: int = 3
    look_ahead_days: int = 30
    batch_window_seconds: int = 300
    retention_days: int = 7
    materialize_max_occurrences: int = 500

    @classmethod
    def from_settings(cls, settings: Any) -> "ProcessorConfig":
        return cls(
            batch_size=settings.REMINDER_BATCH_SIZE,
            tick_interval_ms=settings.REMINDER_TICK_INTERVAL_MS,
            max_retries=settings.REMINDER_MAX_RETRIES,
            look_ahead_days=settings.REMINDER_LOOKAHEAD_DAYS,
            batch_window_seconds=settings.REMINDER_BATCH_WINDOW_SECONDS,
            retention_days=settings.REMINDER_RETENTION_DAYS,
            materialize_max_occurrences=settings.MATERIALIZE_MAX_OCCURRENCES,
        )

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{f.name} must be a positive integer")


@dataclass
class TickResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    series_materialized: int = 0
    occurrences_materialized: int = 0
    reminders_found: int = 0
    dispatched: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    cleaned: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass(frozen=True)
class DueReminder:
    reminder_id: str
    user_id: str
    reminder_type: ReminderType
    trigger_time: datetime
    event: EventSummary


class ReminderProcessor:
    """Polls the reminders table and fans out due reminders."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        fanout: NotificationFanout,
        config: Optional[ProcessorConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.fanout = fanout
        self.config = config or ProcessorConfig()
        self.clock = clock
        self.processing: set[str] = set()

        self._occurrences: dict[str, list[Occurrence]] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._sleep_started: Optional[float] = None

        self._ticks = 0
        self._totals = {"sent": 0, "retried": 0, "failed": 0, "cleaned": 0}
        self._last_result: Optional[TickResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Run a tick immediately, then one every ``tick_interval_ms``."""
        if self._running:
            logger.warning("Reminder processor already running")
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Reminder processor started (interval %d ms)", self.config.tick_interval_ms)

    async def stop(self) -> None:
        """Stop scheduling ticks; an in-flight tick is allowed to finish."""
        if not self._running:
            return
        self._running = False
        if self._wake is not None:
            self._wake.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            await task
        logger.info("Reminder processor stopped")

    def update_config(self, **changes: Any) -> ProcessorConfig:
        """Apply runtime config changes; a new interval reschedules the pending sleep."""
        unknown = set(changes) - {f.name for f in fields(ProcessorConfig)}
        if unknown:
            raise ValueError(f"Unknown processor settings: {', '.join(sorted(unknown))}")
        candidate = ProcessorConfig(**{**asdict(self.config), **changes})
        candidate.validate()
        interval_changed = candidate.tick_interval_ms != self.config.tick_interval_ms
        self.config = candidate
        logger.info("Reminder processor config updated: %s", changes)
        if interval_changed and self._wake is not None:
            self._wake.set()
        return self.config

    async def _run_loop(self) -> None:
        while self._running:
            await self.tick()
            if not self._running:
                break
            await self._sleep_until_next_tick()

    async def _sleep_until_next_tick(self) -> None:
        loop = asyncio.get_running_loop()
        self._sleep_started = loop.time()
        try:
            while self._running:
                remaining = self._sleep_started + self.config.tick_interval_ms / 1000 - loop.time()
                if remaining <= 0:
                    return
                self._wake.clear()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    return
                # woken by update_config or stop: recompute against the current interval
        finally:
            self._sleep_started = None

    # ── Ticks ─────────────────────────────────────────────────

    async def tick(self) -> TickResult:
        result = TickResult(started_at=self.clock())
        for name, step in (
            ("materialize", self._materialize),
            ("dispatch", self._dispatch_due),
            ("cleanup", self._cleanup),
        ):
            try:
                await step(result)
            except Exception as exc:
                logger.exception("Reminder processor step '%s' failed", name)
                result.errors.append(f"{name}: {exc}")
        result.finished_at = self.clock()
        self._record(result)
        logger.info(
            "Tick done: %d found, %d sent, %d retried, %d failed, %d skipped, %d cleaned",
            result.reminders_found, result.sent, result.retried, result.failed, result.skipped, result.cleaned,
        )
        return result

    async def process_now(self) -> dict[str, Any]:
        """Run the three steps immediately, outside the timer."""
        result = await self.tick()
        stats = await run_in_threadpool(self.get_stats)
        return {"result": result.to_dict(), "stats": stats}

    def _record(self, result: TickResult) -> None:
        self._ticks += 1
        self._last_result = result
        for key in self._totals:
            self._totals[key] += getattr(result, key)

    # ── Step 1: materialize ───────────────────────────────────

    async def _materialize(self, result: TickResult) -> None:
        now = self.clock()
        window_end = now + timedelta(days=self.config.look_ahead_days)
        cache = await run_in_threadpool(self._expand_active_series, now, window_end)
        self._occurrences = cache
        result.series_materialized = len(cache)
        result.occurrences_materialized = sum(len(v) for v in cache.values())

    def _expand_active_series(self, now: datetime, window_end: datetime) -> dict[str, list[Occurrence]]:
        cache: dict[str, list[Occurrence]] = {}
        db = self.session_factory()
        try:
            series_list = (
                db.query(RecurringSeries)
                .options(joinedload(RecurringSeries.parent_event))
                .filter(RecurringSeries.is_active.is_(True))
                .all()
            )
            for series in series_list:
                try:
                    cache[series.series_id] = list(
                        expand(series, now, window_end, self.config.materialize_max_occurrences, now=now)
                    )
                except RecurrenceError as exc:
                    logger.warning("Cannot expand series %s: %s", series.series_id, exc)
        finally:
            db.close()
        return cache

    def upcoming_occurrences(self, series_id: str) -> list[Occurrence]:
        """Occurrences cached by the last materialize step (empty if unknown)."""
        return list(self._occurrences.get(series_id, []))

    def invalidate_series(self, series_id: str) -> None:
        self._occurrences.pop(series_id, None)

    # ── Step 2: dispatch ──────────────────────────────────────

    def _load_due(self, now: datetime) -> list[DueReminder]:
        horizon = now + timedelta(seconds=self.config.batch_window_seconds)
        db = self.session_factory()
        try:
            rows = (
                db.query(Reminder, Event)
                .join(Event, Event.event_id == Reminder.event_id)
                .filter(
                    Reminder.status == ReminderStatus.pending,
                    Reminder.trigger_time <= horizon,
                    Reminder.retry_count < self.config.max_retries,
                )
                .order_by(Reminder.trigger_time.asc())
                .limit(self.config.batch_size)
                .all()
            )
            return [
                DueReminder(
                    reminder_id=reminder.reminder_id,
                    user_id=reminder.user_id,
                    reminder_type=reminder.type,
                    trigger_time=ensure_utc(reminder.trigger_time),
                    event=EventSummary.from_event(event),
                )
                for reminder, event in rows
            ]
        finally:
            db.close()

    async def _dispatch_due(self, result: TickResult) -> None:
        due = await run_in_threadpool(self._load_due, self.clock())
        result.reminders_found = len(due)
        for item in due:
            # claimed on the loop thread only
            if item.reminder_id in self.processing:
                logger.debug("Reminder %s is already being processed, skipping", item.reminder_id)
                result.skipped += 1
                continue
            if item.trigger_time > self.clock():
                # inside the batch window but not yet due
                result.skipped += 1
                continue
            self.processing.add(item.reminder_id)
            try:
                await self._dispatch_one(item, result)
            finally:
                self.processing.discard(item.reminder_id)

    def _still_dispatchable(self, reminder_id: str) -> bool:
        db = self.session_factory()
        try:
            reminder = db.query(Reminder).filter(Reminder.reminder_id == reminder_id).first()
            return (
                reminder is not None
                and reminder.status == ReminderStatus.pending
                and reminder.retry_count < self.config.max_retries
            )
        finally:
            db.close()

    async def _dispatch_one(self, item: DueReminder, result: TickResult) -> None:
        # the snapshot may be stale if an overlapping tick already handled this row
        if not await run_in_threadpool(self._still_dispatchable, item.reminder_id):
            result.skipped += 1
            return

        result.dispatched += 1
        try:
            payload = await self.fanout.create_persisted_notification(
                item.user_id, item.event, item.reminder_type, item.trigger_time
            )
        except Exception as exc:
            outcome = await run_in_threadpool(self._record_failure, item.reminder_id, exc)
            if outcome == ReminderStatus.failed:
                result.failed += 1
            elif outcome == ReminderStatus.pending:
                result.retried += 1
            else:
                result.skipped += 1
            return

        if not await run_in_threadpool(self._mark_sent, item.reminder_id):
            result.skipped += 1
            return
        result.sent += 1
        self.fanout.push_realtime(item.user_id, payload or {"event_id": item.event.event_id})

    def _pending_row(self, db: Session, reminder_id: str) -> Optional[Reminder]:
        """The row if it is still PENDING; the owner may have cancelled it mid-dispatch."""
        reminder = (
            db.query(Reminder)
            .filter(Reminder.reminder_id == reminder_id, Reminder.status == ReminderStatus.pending)
            .first()
        )
        if reminder is None:
            logger.info("Reminder %s is no longer pending, leaving its status unchanged", reminder_id)
        return reminder

    def _mark_sent(self, reminder_id: str) -> bool:
        now = self.clock()
        db = self.session_factory()
        try:
            reminder = self._pending_row(db, reminder_id)
            if reminder is None:
                return False
            reminder.status = ReminderStatus.sent
            reminder.sent_at = now
            reminder.updated_at = now
            db.commit()
        finally:
            db.close()
        logger.info("Reminder %s sent", reminder_id)
        return True

    def _record_failure(self, reminder_id: str, exc: Exception) -> Optional[ReminderStatus]:
        """Count a failed attempt; returns the row's new status, or None if it was left alone."""
        now = self.clock()
        db = self.session_factory()
        try:
            reminder = self._pending_row(db, reminder_id)
            if reminder is None:
                return None
            reminder.retry_count += 1
            reminder.last_error = str(exc)[:1000] or exc.__class__.__name__
            reminder.updated_at = now
            if reminder.retry_count >= self.config.max_retries:
                reminder.status = ReminderStatus.failed
                logger.error(
                    "Reminder %s failed permanently after %d attempts: %s",
                    reminder_id, reminder.retry_count, exc,
                )
            else:
                logger.warning(
                    "Reminder %s dispatch failed (attempt %d/%d): %s",
                    reminder_id, reminder.retry_count, self.config.max_retries, exc,
                )
            new_status = reminder.status
            db.commit()
            return new_status
        finally:
            db.close()

    # ── Step 3: cleanup ───────────────────────────────────────

    async def _cleanup(self, result: TickResult) -> None:
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        sent, failed = await run_in_threadpool(self._delete_expired, cutoff)
        result.cleaned = sent + failed
        if result.cleaned:
            logger.info("Cleaned up %d sent and %d failed reminders", sent, failed)

    def _delete_expired(self, cutoff: datetime) -> tuple[int, int]:
        db = self.session_factory()
        try:
            sent = (
                db.query(Reminder)
                .filter(Reminder.status == ReminderStatus.sent, Reminder.sent_at < cutoff)
                .delete(synchronize_session=False)
            )
            failed = (
                db.query(Reminder)
                .filter(Reminder.status == ReminderStatus.failed, Reminder.updated_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return sent, failed

    # ── Stats ─────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        db = self.session_factory()
        try:
            by_status = {
                status.value: db.query(Reminder).filter(Reminder.status == status).count()
                for status in ReminderStatus
            }
        finally:
            db.close()
        return {
            "is_running": self._running,
            "config": asdict(self.config),
            "ticks": self._ticks,
            "processing": len(self.processing),
            "totals": dict(self._totals),
            "reminders_by_status": by_status,
            "materialized_series": len(self._occurrences),
            "last_tick": self._last_result.to_dict() if self._last_result else None,
        }
