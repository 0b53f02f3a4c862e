"""FastAPI application entry point."""
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from event_reminders.config import settings
from event_reminders.database import Base, engine, SessionLocal
from event_reminders.logging_config import configure_logging

# Import routers
from event_reminders.routers import (
    users, events, registrations, recurring, reminders, notifications, reminder_processor,
)

# Import all models so Base.metadata knows about them
from event_reminders.models.user import User                          # noqa: F401
from event_reminders.models.event import Event                        # noqa: F401
from event_reminders.models.registration import EventRegistration     # noqa: F401
from event_reminders.models.recurring_series import RecurringSeries   # noqa: F401
from event_reminders.models.reminder import Reminder                  # noqa: F401
from event_reminders.models.notification import Notification          # noqa: F401

from event_reminders.services.notification_service import NotificationFanout, RealtimeBroker
from event_reminders.services.reminder_processor import ProcessorConfig, ReminderProcessor

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Event Reminders",
    description="Recurring events and reminder dispatch",
    version="0.1.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One broker and one processor per process
app.state.realtime_broker = RealtimeBroker()
app.state.reminder_processor = ReminderProcessor(
    session_factory=SessionLocal,
    fanout=NotificationFanout(SessionLocal, app.state.realtime_broker),
    config=ProcessorConfig.from_settings(settings),
)

# Register routers; /api/events/recurring must precede /api/events/{event_id}
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(recurring.router, prefix="/api/events/recurring", tags=["Recurring"])
app.include_router(events.router, prefix="/api/events", tags=["Events"])
app.include_router(registrations.router, prefix="/api/events", tags=["Registrations"])
app.include_router(reminders.router, prefix="/api/events", tags=["Reminders"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(reminder_processor.router, prefix="/api/reminder-processor", tags=["ReminderProcessor"])


@app.on_event("startup")
async def on_startup():
    """Create database tables on startup (for SQLite dev mode) and start the processor."""
    configure_logging(settings.LOG_LEVEL)
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    if settings.REMINDER_PROCESSOR_AUTOSTART:
        await app.state.reminder_processor.start()


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.reminder_processor.stop()
    logger.info("Event reminders service stopped")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "reminder_processor": app.state.reminder_processor.is_running}
