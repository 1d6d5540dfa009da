"""
Booking Background Tasks
========================

Celery worker and beat schedule for periodic booking maintenance:
- check-in reminder emails for confirmed bookings arriving tomorrow
- expiry of pending bookings never paid within the reservation window

Run with:
    celery -A booking_engine.tasks worker --beat
"""

import asyncio
import random
from datetime import timedelta

import structlog
from celery import Celery
from celery.schedules import crontab

from .bookings import bookings_checking_in, expire_stale_bookings
from .config import settings
from .database import dispose_engine, get_async_session
from .effects import run_best_effort
from .models import utcnow
from .notifications import send_booking_email

logger = structlog.get_logger(__name__)

# =============================================================================
# CELERY CONFIGURATION
# =============================================================================

celery = Celery(
    "booking_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_broker_url
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery.conf.beat_schedule = {
    "send-check-in-reminders": {
        "task": "booking_engine.tasks.send_check_in_reminders",
        "schedule": crontab(hour=9, minute=0),  # 9 AM UTC daily
    },
    "expire-stale-bookings": {
        "task": "booking_engine.tasks.expire_pending_bookings",
        "schedule": crontab(minute="*/10"),
    },
}


def calculate_retry_delay(retries: int) -> float:
    """Calculate exponential backoff with jitter."""
    base_delays = [60, 120, 300, 600]
    base = base_delays[min(retries, len(base_delays) - 1)]
    return base + random.uniform(0, base / 2)


# =============================================================================
# CHECK-IN REMINDERS
# =============================================================================

async def _send_check_in_reminders() -> dict:
    tomorrow = (utcnow() + timedelta(days=1)).date()
    try:
        async with get_async_session() as session:
            bookings = await bookings_checking_in(session, tomorrow)
            booking_ids = [booking.id for booking in bookings]

        sent = 0
        for booking_id in booking_ids:
            result = await run_best_effort(
                "check_in_reminder", send_booking_email, booking_id, "check_in_reminder"
            )
            if result is not None:
                sent += 1
    finally:
        # Each task run owns its event loop; pooled connections cannot outlive it
        await dispose_engine()

    logger.info("Check-in reminders processed", date=tomorrow.isoformat(), bookings=len(booking_ids), sent=sent)
    return {"date": tomorrow.isoformat(), "bookings": len(booking_ids), "sent": sent}


@celery.task(bind=True, max_retries=3)
def send_check_in_reminders(self) -> dict:
    """Email guests whose confirmed stay starts tomorrow."""
    try:
        return asyncio.run(_send_check_in_reminders())
    except Exception as e:
        logger.error("Check-in reminder run failed", error=str(e))
        raise self.retry(exc=e, countdown=calculate_retry_delay(self.request.retries))


# =============================================================================
# RESERVATION EXPIRY
# =============================================================================

async def _expire_pending_bookings() -> dict:
    try:
        async with get_async_session() as session:
            expired = await expire_stale_bookings(session)
    finally:
        await dispose_engine()
    return {"expired": expired}


@celery.task(bind=True, max_retries=3)
def expire_pending_bookings(self) -> dict:
    """Cancel pending bookings left unpaid past the reservation timeout."""
    try:
        return asyncio.run(_expire_pending_bookings())
    except Exception as e:
        logger.error("Pending booking expiry failed", error=str(e))
        raise self.retry(exc=e, countdown=calculate_retry_delay(self.request.retries))
