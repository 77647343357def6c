import json

import httpx
import pytest
from httpx import MockTransport, Response

from app.domain.reservations.repository import ReservationRepository
from app.models import BookingEvent
from app.services.notification_service import BookingNotifier, deliver_booking_event, pending_event_ids

WEBHOOK_URL = "https://notify.example.test/booking-events"


@pytest.fixture
def booking_event(db, complex_row, clock):
    event = ReservationRepository.add_event(
        db,
        event_type="booking.approved",
        slot_key="x-cancha1-2025-03-10-19:00",
        complex_id="x",
        external_payment_id="9001",
        reservation_id=1,
        payload={"customer_name": "Ana"},
        now=clock(),
    )
    db.commit()
    return event.id


class FakePool:
    def __init__(self):
        self.jobs = []

    async def enqueue_job(self, function, *args, **kwargs):
        self.jobs.append((function, args, kwargs))


async def test_notify_enqueues_one_job_per_event():
    notifier = BookingNotifier()
    notifier._pool = FakePool()

    await notifier.notify([3, 4])

    assert notifier._pool.jobs == [
        ("dispatch_booking_event_task", (3,), {"_job_id": "booking-event:3"}),
        ("dispatch_booking_event_task", (4,), {"_job_id": "booking-event:4"}),
    ]


async def test_delivery_posts_event_and_stamps_once(db, booking_event):
    captured = []

    def handler(request):
        captured.append(json.loads(request.content))
        return Response(200, json={"ok": True})

    transport = MockTransport(handler)
    assert await deliver_booking_event(db, booking_event, webhook_url=WEBHOOK_URL, transport=transport)
    assert not await deliver_booking_event(db, booking_event, webhook_url=WEBHOOK_URL, transport=transport)

    assert len(captured) == 1
    message = captured[0]
    assert message["event_type"] == "booking.approved"
    assert message["slot_key"] == "x-cancha1-2025-03-10-19:00"
    assert message["complex_name"] == "Complejo X"
    assert message["data"] == {"customer_name": "Ana"}

    db.expire_all()
    assert db.get(BookingEvent, booking_event).dispatched_at is not None
    assert pending_event_ids(db) == []


async def test_failed_delivery_stays_pending(db, booking_event):
    def handler(request):
        return Response(500, text="boom")

    with pytest.raises(httpx.HTTPStatusError):
        await deliver_booking_event(db, booking_event, webhook_url=WEBHOOK_URL, transport=MockTransport(handler))

    assert pending_event_ids(db) == [booking_event]


async def test_delivery_without_webhook_only_logs(db, booking_event):
    assert await deliver_booking_event(db, booking_event, webhook_url=None)
    assert pending_event_ids(db) == []


async def test_unknown_event_is_skipped(db, complex_row):
    assert not await deliver_booking_event(db, 12345, webhook_url=None)
