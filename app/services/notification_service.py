"""
Booking notification service.

Downstream triggers (owner WhatsApp/email, customer confirmation) are written
to the ``booking_events`` outbox in the same transaction as the state change
that caused them. This module hands committed events to the ARQ worker and
delivers them. Delivery stamps ``dispatched_at`` once; the worker cron picks
up anything whose enqueue or delivery failed.
"""

import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from ..config import NOTIFICATIONS_WEBHOOK_URL
from ..models import BookingEvent, Complex
from ..shared.clock import utcnow

logger = logging.getLogger(__name__)


class BookingNotifier:
    """Enqueues dispatch jobs for committed outbox events"""

    def __init__(self, redis_settings=None):
        self.redis_settings = redis_settings
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            from arq import create_pool

            from ..worker import get_redis_settings

            self._pool = await create_pool(self.redis_settings or get_redis_settings())
        return self._pool

    async def notify(self, event_ids: list[int]) -> None:
        if not event_ids:
            return
        try:
            pool = await self._get_pool()
            for event_id in event_ids:
                # Same job id for the same event: duplicates collapse in the queue
                await pool.enqueue_job(
                    "dispatch_booking_event_task", event_id, _job_id=f"booking-event:{event_id}"
                )
                logger.info(f"📋 Booking event {event_id} queued for dispatch")
        except Exception as e:
            # Event stays undispatched in the outbox; the cron job retries it
            logger.warning(f"⚠️ Failed to queue booking events {event_ids}: {e}")


def build_event_message(event: BookingEvent, complex_row: Optional[Complex]) -> dict:
    message = {
        "event_id": event.id,
        "event_type": event.event_type,
        "slot_key": event.slot_key,
        "complex_id": event.complex_id,
        "payment_id": event.external_payment_id,
        "data": event.payload or {},
    }
    if complex_row:
        message["complex_name"] = complex_row.name
        message["owner"] = {
            "phone": complex_row.owner_phone,
            "email": complex_row.owner_email,
            "notify_whatsapp": complex_row.notify_whatsapp,
            "notify_email": complex_row.notify_email,
        }
    return message


async def deliver_booking_event(
    db: Session,
    event_id: int,
    webhook_url: Optional[str] = NOTIFICATIONS_WEBHOOK_URL,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """
    Deliver one outbox event. Returns False when the event is unknown or was
    already dispatched. Delivery errors propagate so the job is retried.
    """
    event = db.query(BookingEvent).filter(BookingEvent.id == event_id).first()
    if not event:
        logger.warning(f"⚠️ Booking event {event_id} not found")
        return False
    if event.dispatched_at is not None:
        logger.info(f"ℹ️ Booking event {event_id} already dispatched")
        return False

    complex_row = db.query(Complex).filter(Complex.id == event.complex_id).first()
    message = build_event_message(event, complex_row)

    if webhook_url:
        async with httpx.AsyncClient(timeout=15.0, transport=transport) as http_client:
            response = await http_client.post(webhook_url, json=message)
            response.raise_for_status()
        logger.info(f"📣 Booking event {event_id} ({event.event_type}) delivered for {event.slot_key}")
    else:
        logger.info(f"📣 Booking event {event_id} ({event.event_type}) for {event.slot_key}: {message}")

    stamped = (
        db.query(BookingEvent)
        .filter(BookingEvent.id == event_id, BookingEvent.dispatched_at.is_(None))
        .update({BookingEvent.dispatched_at: utcnow()}, synchronize_session=False)
    )
    db.commit()
    return stamped == 1


def pending_event_ids(db: Session, limit: int = 100) -> list[int]:
    rows = (
        db.query(BookingEvent.id)
        .filter(BookingEvent.dispatched_at.is_(None))
        .order_by(BookingEvent.id)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]
