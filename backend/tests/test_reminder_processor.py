"""Tests for the background reminder processor.

Covers:
- Retry until success, retry exhaustion to FAILED
- Cleanup of old SENT / FAILED rows
- Overlapping tick() / process_now() dispatch each reminder once
- Early, batch-window and batch-size handling
- Step isolation, materialization cache
- Owner cancellation during an in-flight dispatch
- Database work kept off the event loop
- Lifecycle: start / stop / interval reschedule / config validation
"""
import asyncio
import time
from datetime import timedelta
from uuid import uuid4

import pytest

from event_reminders.database import utcnow
from event_reminders.models.event import Event, EventStatus
from event_reminders.models.notification import Notification
from event_reminders.models.recurring_series import Frequency, RecurringSeries
from event_reminders.models.reminder import Reminder, ReminderStatus, ReminderType
from event_reminders.models.user import User
from event_reminders.services.notification_service import EventSummary, NotificationFanout, RealtimeBroker
from event_reminders.services.reminder_processor import ProcessorConfig, ReminderProcessor, TickResult


class StubFanout:
    """Records dispatch attempts; fails the first ``failures`` calls (or all of them)."""

    def __init__(self, failures: int = 0, always_fail: bool = False, delay: float = 0):
        self.failures = failures
        self.always_fail = always_fail
        self.delay = delay
        self.calls = []
        self.pushed = []

    async def create_persisted_notification(self, user_id, event, reminder_type, trigger_time):
        self.calls.append((user_id, event.event_id, reminder_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail or len(self.calls) <= self.failures:
            raise RuntimeError("provider unavailable")
        return {"event_id": event.event_id}

    def push_realtime(self, user_id, payload):
        self.pushed.append((user_id, payload))


def _seed_event(db, start_in=timedelta(hours=2)) -> tuple[User, Event]:
    user = User(display_name=f"user-{uuid4().hex[:8]}")
    db.add(user)
    db.flush()
    start = utcnow() + start_in
    event = Event(
        title="Launch Party",
        start_time_utc=start,
        end_time_utc=start + timedelta(hours=1),
        virtual_link="https://meet.example.com/launch",
        creator_id=user.user_id,
        status=EventStatus.published,
    )
    db.add(event)
    db.commit()
    return user, event


def _seed_reminder(db, user, event, trigger_in=timedelta(seconds=-1), **fields) -> str:
    reminder = Reminder(
        event_id=event.event_id,
        user_id=user.user_id,
        type=fields.pop("type", ReminderType.email),
        trigger_time=utcnow() + trigger_in,
        **fields,
    )
    db.add(reminder)
    db.commit()
    return reminder.reminder_id


def _load(session_factory, reminder_id):
    session = session_factory()
    try:
        return session.query(Reminder).filter(Reminder.reminder_id == reminder_id).first()
    finally:
        session.close()


def _processor(session_factory, fanout, **config) -> ReminderProcessor:
    return ReminderProcessor(session_factory, fanout, ProcessorConfig(**config))


class TestRetries:

    def test_fails_twice_then_sent(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        fanout = StubFanout(failures=2)
        processor = _processor(session_factory, fanout, max_retries=3)

        asyncio.run(processor.tick())
        row = _load(session_factory, reminder_id)
        assert row.status == ReminderStatus.pending
        assert row.retry_count == 1
        assert row.last_error == "provider unavailable"

        asyncio.run(processor.tick())
        assert _load(session_factory, reminder_id).retry_count == 2

        result = asyncio.run(processor.tick())
        row = _load(session_factory, reminder_id)
        assert row.status == ReminderStatus.sent
        assert row.sent_at is not None
        assert result.sent == 1
        assert len(fanout.calls) == 3
        assert fanout.pushed == [(user.user_id, {"event_id": event.event_id})]

    def test_retries_exhausted(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        fanout = StubFanout(always_fail=True)
        processor = _processor(session_factory, fanout, max_retries=2)

        asyncio.run(processor.tick())
        assert _load(session_factory, reminder_id).status == ReminderStatus.pending
        result = asyncio.run(processor.tick())
        row = _load(session_factory, reminder_id)
        assert row.status == ReminderStatus.failed
        assert row.retry_count == 2
        assert result.failed == 1

        result = asyncio.run(processor.tick())
        assert len(fanout.calls) == 2
        assert result.reminders_found == 0


class TestCleanup:

    def test_old_sent_deleted_recent_kept(self, db, session_factory):
        user, event = _seed_event(db)
        now = utcnow()
        old = _seed_reminder(db, user, event, trigger_in=timedelta(days=-9),
                             status=ReminderStatus.sent, sent_at=now - timedelta(days=8))
        recent = _seed_reminder(db, user, event, trigger_in=timedelta(days=-2),
                                status=ReminderStatus.sent, sent_at=now - timedelta(days=1))
        processor = _processor(session_factory, StubFanout())

        result = asyncio.run(processor.tick())
        assert _load(session_factory, old) is None
        assert _load(session_factory, recent) is not None
        assert result.cleaned == 1

    def test_old_failed_deleted_by_updated_at(self, db, session_factory):
        user, event = _seed_event(db)
        now = utcnow()
        old = _seed_reminder(db, user, event, status=ReminderStatus.failed, retry_count=3,
                             updated_at=now - timedelta(days=8))
        recent = _seed_reminder(db, user, event, status=ReminderStatus.failed, retry_count=3,
                                updated_at=now - timedelta(days=2))
        processor = _processor(session_factory, StubFanout())

        asyncio.run(processor.tick())
        assert _load(session_factory, old) is None
        assert _load(session_factory, recent) is not None

    def test_pending_and_cancelled_never_cleaned(self, db, session_factory):
        user, event = _seed_event(db)
        cancelled = _seed_reminder(db, user, event, trigger_in=timedelta(days=-30),
                                   status=ReminderStatus.canceled, updated_at=utcnow() - timedelta(days=30))
        processor = _processor(session_factory, StubFanout())
        asyncio.run(processor.tick())
        assert _load(session_factory, cancelled) is not None


class TestConcurrencyGuard:

    def test_overlapping_tick_and_process_now_dispatch_once(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        fanout = StubFanout(delay=0.3)
        processor = _processor(session_factory, fanout)

        async def overlap():
            return await asyncio.gather(processor.tick(), processor.process_now())

        tick_result, manual = asyncio.run(overlap())
        assert len(fanout.calls) == 1
        assert tick_result.sent + manual["result"]["sent"] == 1
        assert tick_result.skipped + manual["result"]["skipped"] == 1
        assert _load(session_factory, reminder_id).status == ReminderStatus.sent
        assert processor.processing == set()

    def test_stale_snapshot_is_not_redispatched(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        fanout = StubFanout()
        processor = _processor(session_factory, fanout)

        due = processor._load_due(utcnow())
        asyncio.run(processor.tick())
        result = TickResult(started_at=utcnow())
        asyncio.run(processor._dispatch_one(due[0], result))

        assert len(fanout.calls) == 1
        assert result.skipped == 1
        assert _load(session_factory, reminder_id).status == ReminderStatus.sent


class TestDueSelection:

    def test_inside_batch_window_but_not_due_is_skipped(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event, trigger_in=timedelta(minutes=2))
        fanout = StubFanout()
        processor = _processor(session_factory, fanout)

        result = asyncio.run(processor.tick())
        assert result.reminders_found == 1
        assert result.skipped == 1
        assert fanout.calls == []
        assert _load(session_factory, reminder_id).status == ReminderStatus.pending

    def test_outside_batch_window_not_queried(self, db, session_factory):
        user, event = _seed_event(db)
        _seed_reminder(db, user, event, trigger_in=timedelta(minutes=30))
        result = asyncio.run(_processor(session_factory, StubFanout()).tick())
        assert result.reminders_found == 0

    def test_cancelled_reminders_not_dispatched(self, db, session_factory):
        user, event = _seed_event(db)
        _seed_reminder(db, user, event, status=ReminderStatus.canceled)
        fanout = StubFanout()
        asyncio.run(_processor(session_factory, fanout).tick())
        assert fanout.calls == []

    def test_batch_size_takes_earliest_first(self, db, session_factory):
        user, event = _seed_event(db)
        late = _seed_reminder(db, user, event, trigger_in=timedelta(minutes=-1), type=ReminderType.sms)
        earliest = _seed_reminder(db, user, event, trigger_in=timedelta(minutes=-10), type=ReminderType.email)
        middle = _seed_reminder(db, user, event, trigger_in=timedelta(minutes=-5), type=ReminderType.push)
        fanout = StubFanout()
        processor = _processor(session_factory, fanout, batch_size=2)

        asyncio.run(processor.tick())
        assert [c[2] for c in fanout.calls] == [ReminderType.email, ReminderType.push]
        assert _load(session_factory, earliest).status == ReminderStatus.sent
        assert _load(session_factory, middle).status == ReminderStatus.sent
        assert _load(session_factory, late).status == ReminderStatus.pending


class CancellingFanout(StubFanout):
    """Cancels every reminder (as its owner would) while the dispatch is in flight."""

    def __init__(self, session_factory, **kwargs):
        super().__init__(**kwargs)
        self.session_factory = session_factory

    async def create_persisted_notification(self, user_id, event, reminder_type, trigger_time):
        session = self.session_factory()
        try:
            session.query(Reminder).update({Reminder.status: ReminderStatus.canceled}, synchronize_session=False)
            session.commit()
        finally:
            session.close()
        return await super().create_persisted_notification(user_id, event, reminder_type, trigger_time)


class TestCancelledDuringDispatch:

    def test_failure_does_not_overwrite_cancelled(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        processor = _processor(session_factory, CancellingFanout(session_factory, always_fail=True), max_retries=1)

        result = asyncio.run(processor.tick())
        row = _load(session_factory, reminder_id)
        assert row.status == ReminderStatus.canceled
        assert row.retry_count == 0
        assert row.last_error is None
        assert result.failed == 0
        assert result.skipped == 1

    def test_retryable_failure_leaves_cancelled_row_untouched(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        processor = _processor(session_factory, CancellingFanout(session_factory, always_fail=True), max_retries=3)

        result = asyncio.run(processor.tick())
        row = _load(session_factory, reminder_id)
        assert row.status == ReminderStatus.canceled
        assert row.retry_count == 0
        assert result.retried == 0

    def test_success_does_not_overwrite_cancelled(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        fanout = CancellingFanout(session_factory)
        processor = _processor(session_factory, fanout)

        result = asyncio.run(processor.tick())
        row = _load(session_factory, reminder_id)
        assert row.status == ReminderStatus.canceled
        assert row.sent_at is None
        assert result.sent == 0
        assert fanout.pushed == []


class TestEventLoopResponsiveness:

    def test_slow_database_step_does_not_block_loop(self, session_factory, monkeypatch):
        processor = _processor(session_factory, StubFanout())

        def _slow_load(now):
            time.sleep(0.3)
            return []

        monkeypatch.setattr(processor, "_load_due", _slow_load)

        async def scenario():
            beats = 0
            task = asyncio.create_task(processor.tick())
            while not task.done():
                await asyncio.sleep(0.01)
                beats += 1
            await task
            return beats

        assert asyncio.run(scenario()) >= 10

    def test_fanout_commit_does_not_block_loop(self, db, session_factory, monkeypatch):
        user, event = _seed_event(db)
        fanout = NotificationFanout(session_factory, RealtimeBroker())
        original_store = fanout._store

        def _slow_store(notification):
            time.sleep(0.3)
            return original_store(notification)

        monkeypatch.setattr(fanout, "_store", _slow_store)
        summary = EventSummary.from_event(event)

        async def scenario():
            beats = 0
            task = asyncio.create_task(
                fanout.create_persisted_notification(user.user_id, summary, ReminderType.email, utcnow())
            )
            while not task.done():
                await asyncio.sleep(0.01)
                beats += 1
            return beats, await task

        beats, payload = asyncio.run(scenario())
        assert beats >= 10
        assert payload["data"]["event_id"] == event.event_id


class TestStepIsolation:

    def test_failed_step_does_not_abort_others(self, db, session_factory, monkeypatch):
        user, event = _seed_event(db)
        old = _seed_reminder(db, user, event, status=ReminderStatus.sent,
                             sent_at=utcnow() - timedelta(days=10))
        due = _seed_reminder(db, user, event)
        processor = _processor(session_factory, StubFanout())

        async def _broken(result):
            raise RuntimeError("materialize exploded")

        monkeypatch.setattr(processor, "_materialize", _broken)
        result = asyncio.run(processor.tick())
        assert result.errors == ["materialize: materialize exploded"]
        assert _load(session_factory, due).status == ReminderStatus.sent
        assert _load(session_factory, old) is None

    def test_cleanup_runs_when_dispatch_fails_entirely(self, db, session_factory, monkeypatch):
        user, event = _seed_event(db)
        old = _seed_reminder(db, user, event, status=ReminderStatus.sent,
                             sent_at=utcnow() - timedelta(days=10))
        processor = _processor(session_factory, StubFanout())

        def _no_database(now):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(processor, "_load_due", _no_database)
        result = asyncio.run(processor.tick())
        assert result.errors == ["dispatch: database unavailable"]
        assert _load(session_factory, old) is None


class TestMaterialize:

    def test_caches_active_series_without_creating_reminders(self, db, session_factory):
        user, event = _seed_event(db, start_in=timedelta(days=1))
        active = RecurringSeries(parent_event_id=event.event_id, frequency=Frequency.daily, interval=1,
                                 exceptions=[])
        _, other_event = _seed_event(db, start_in=timedelta(days=1))
        inactive = RecurringSeries(parent_event_id=other_event.event_id, frequency=Frequency.daily, interval=1,
                                   exceptions=[], is_active=False)
        db.add_all([active, inactive])
        db.commit()

        processor = _processor(session_factory, StubFanout(), look_ahead_days=7)
        result = asyncio.run(processor.tick())

        occurrences = processor.upcoming_occurrences(active.series_id)
        assert len(occurrences) == 7
        assert processor.upcoming_occurrences(inactive.series_id) == []
        assert result.series_materialized == 1
        assert db.query(Reminder).count() == 0

    def test_invalidate_series(self, db, session_factory):
        user, event = _seed_event(db, start_in=timedelta(days=1))
        series = RecurringSeries(parent_event_id=event.event_id, frequency=Frequency.weekly, interval=1,
                                 exceptions=[])
        db.add(series)
        db.commit()
        processor = _processor(session_factory, StubFanout())
        asyncio.run(processor.tick())
        assert processor.upcoming_occurrences(series.series_id)

        processor.invalidate_series(series.series_id)
        assert processor.upcoming_occurrences(series.series_id) == []


class TestFanoutIntegration:

    def test_real_fanout_persists_and_pushes(self, db, session_factory):
        user, event = _seed_event(db, start_in=timedelta(minutes=30))
        reminder_id = _seed_reminder(db, user, event, type=ReminderType.push)
        broker = RealtimeBroker()
        processor = ReminderProcessor(session_factory, NotificationFanout(session_factory, broker))

        async def scenario():
            queue = broker.subscribe(user.user_id)
            await processor.tick()
            return queue.get_nowait()

        payload = asyncio.run(scenario())
        assert payload["type"] == "EVENT_REMINDER"
        assert payload["priority"] == "URGENT"
        assert payload["data"]["event_id"] == event.event_id
        assert _load(session_factory, reminder_id).status == ReminderStatus.sent

        session = session_factory()
        try:
            notification = session.query(Notification).one()
            assert notification.user_id == user.user_id
            assert notification.title == "Reminder: Launch Party"
        finally:
            session.close()

    def test_realtime_failure_does_not_affect_status(self, db, session_factory, monkeypatch):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        broker = RealtimeBroker()

        def _explode(user_id, payload):
            raise ConnectionError("socket closed")

        monkeypatch.setattr(broker, "publish", _explode)
        processor = ReminderProcessor(session_factory, NotificationFanout(session_factory, broker))
        result = asyncio.run(processor.tick())
        assert result.errors == []
        assert _load(session_factory, reminder_id).status == ReminderStatus.sent


class TestLifecycle:

    def test_start_runs_immediately_and_stop(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        processor = _processor(session_factory, StubFanout(), tick_interval_ms=60_000)

        async def scenario():
            await processor.start()
            assert processor.is_running
            await asyncio.sleep(0.1)
            await processor.stop()

        asyncio.run(scenario())
        assert not processor.is_running
        assert _load(session_factory, reminder_id).status == ReminderStatus.sent

    def test_stop_lets_in_flight_tick_finish(self, db, session_factory):
        user, event = _seed_event(db)
        reminder_id = _seed_reminder(db, user, event)
        fanout = StubFanout(delay=0.2)
        processor = _processor(session_factory, fanout, tick_interval_ms=60_000)

        async def scenario():
            await processor.start()
            await asyncio.sleep(0.05)
            await processor.stop()

        asyncio.run(scenario())
        assert _load(session_factory, reminder_id).status == ReminderStatus.sent

    def test_interval_change_reschedules_without_extra_tick(self, session_factory):
        processor = _processor(session_factory, StubFanout(), tick_interval_ms=60_000)

        async def scenario():
            await processor.start()
            await asyncio.sleep(0.2)
            first = processor.get_stats()["ticks"]
            processor.update_config(tick_interval_ms=500)
            await asyncio.sleep(0.1)
            right_after = processor.get_stats()["ticks"]
            await asyncio.sleep(0.5)
            later = processor.get_stats()["ticks"]
            await processor.stop()
            return first, right_after, later

        first, right_after, later = asyncio.run(scenario())
        assert first == 1
        assert right_after == 1
        assert later == 2

    def test_start_twice_is_harmless(self, session_factory):
        processor = _processor(session_factory, StubFanout(), tick_interval_ms=60_000)

        async def scenario():
            await processor.start()
            task = processor._task
            await processor.start()
            assert processor._task is task
            await processor.stop()

        asyncio.run(scenario())

    def test_update_config_validation(self, session_factory):
        processor = _processor(session_factory, StubFanout())
        with pytest.raises(ValueError):
            processor.update_config(unknown_setting=1)
        with pytest.raises(ValueError):
            processor.update_config(batch_size=0)
        assert processor.update_config(batch_size=10, max_retries=5).batch_size == 10
        assert processor.config.max_retries == 5

    def test_process_now_reports_stats(self, db, session_factory):
        user, event = _seed_event(db)
        _seed_reminder(db, user, event)
        processor = _processor(session_factory, StubFanout())

        report = asyncio.run(processor.process_now())
        assert report["result"]["sent"] == 1
        assert report["stats"]["reminders_by_status"]["SENT"] == 1
        assert report["stats"]["totals"]["sent"] == 1
        assert report["stats"]["is_running"] is False

    def test_config_from_settings(self):
        from event_reminders.config import Settings

        config = ProcessorConfig.from_settings(Settings(REMINDER_BATCH_SIZE=7, REMINDER_MAX_RETRIES=4))
        assert config.batch_size == 7
        assert config.max_retries == 4
        assert config.batch_window_seconds == 300
        assert config.retention_days == 7
