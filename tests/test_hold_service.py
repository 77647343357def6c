from datetime import date, time, timedelta
from decimal import Decimal

import pytest

from app.cache import Cache
from app.domain.complexes.directory import FieldDirectory
from app.domain.complexes.schemas import ComplexUpsert, ScheduleIn
from app.domain.complexes.service import ComplexService
from app.domain.reservations.service import HoldService
from app.errors import InThePast, InvalidDeposit, OutOfHours, SlotTaken, UnknownField
from app.models import Field, Reservation
from app.sweeper import ExpirySweeper

MONDAY = date(2025, 3, 10)


def test_hold_lifecycle_across_expiry(hold_service, session_factory, clock):
    first = hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Ana", "1155550000")

    assert first.status == "hold"
    assert first.slot_key == "x-cancha1-2025-03-10-19:00"
    assert first.hold_deadline == clock() + timedelta(minutes=10)

    clock.advance(minutes=5)
    with pytest.raises(SlotTaken):
        hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Beto", "1155550001")

    clock.advance(minutes=6)
    ExpirySweeper(session_factory=session_factory, clock=clock).sweep_once()

    third = hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Caro", "1155550002")
    assert third.status == "hold"
    assert third.customer_name == "Caro"


def test_field_name_variants_hit_the_same_slot(hold_service):
    hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00")

    with pytest.raises(SlotTaken):
        hold_service.request_hold("x", "CANCHA-1", MONDAY, "19:00")


def test_bare_player_count_matches_the_field(hold_service):
    reservation = hold_service.request_hold("x", "7", MONDAY, "19:00", deposit_amount=Decimal("3000"))

    assert reservation.slot_key == "x-cancha2-2025-03-10-19:00"


def test_unknown_field_and_complex(hold_service):
    with pytest.raises(UnknownField):
        hold_service.request_hold("x", "Cancha 9", MONDAY, "19:00")
    with pytest.raises(UnknownField):
        hold_service.request_hold("nowhere", "Cancha 1", MONDAY, "19:00")


def test_past_slot_is_rejected(hold_service):
    # Clock is 12:00 local on the same day
    with pytest.raises(InThePast):
        hold_service.request_hold("x", "Cancha 1", MONDAY, "11:00")


def test_out_of_hours_is_rejected(hold_service):
    with pytest.raises(OutOfHours):
        hold_service.request_hold("x", "Cancha 1", MONDAY, "23:30")


def test_unknown_field_is_reported_before_time_checks(hold_service):
    with pytest.raises(UnknownField):
        hold_service.request_hold("x", "Cancha 9", MONDAY, "08:00")


def test_overnight_hours_accept_after_midnight(db, directory, clock, make_complex):
    make_complex(complex_id="noche", opens_at=time(22, 0), closes_at=time(2, 0))
    service = HoldService(db, directory=directory, clock=clock)

    reservation = service.request_hold("noche", "Cancha 1", date(2025, 3, 11), "01:00")
    assert reservation.status == "hold"

    with pytest.raises(OutOfHours):
        service.request_hold("noche", "Cancha 1", date(2025, 3, 11), "02:00")


def test_field_deposit_wins_over_request(hold_service):
    reservation = hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", deposit_amount=Decimal("1"))

    assert reservation.deposit_amount == Decimal("5000")


def test_deposit_required_when_field_has_none(hold_service):
    with pytest.raises(InvalidDeposit):
        hold_service.request_hold("x", "Cancha 2", MONDAY, "19:00")
    with pytest.raises(InvalidDeposit):
        hold_service.request_hold("x", "Cancha 2", MONDAY, "19:00", deposit_amount=Decimal("0"))


def test_is_free_and_status(hold_service, clock):
    slot_key, free = hold_service.is_free("x", "Cancha 1", MONDAY, "19:00")
    assert free
    assert hold_service.get_status(slot_key).status == "none"

    hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Ana", "1155550000")
    assert hold_service.is_free("x", "Cancha 1", MONDAY, "19:00") == (slot_key, False)

    status = hold_service.get_status(slot_key)
    assert status.status == "hold"
    assert status.customer_name == "Ana"

    clock.advance(minutes=10)
    assert hold_service.is_free("x", "Cancha 1", MONDAY, "19:00") == (slot_key, True)
    assert hold_service.get_status(slot_key).status == "none"


def test_status_read_releases_an_expired_hold(hold_service, clock, db):
    hold = hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Ana", "1155550000")
    slot_key = hold.slot_key

    clock.advance(minutes=10)
    assert hold_service.get_status(slot_key).status == "none"

    db.expire_all()
    assert db.query(Reservation).filter(Reservation.slot_key == slot_key).count() == 0


def test_availability_read_releases_an_expired_hold(hold_service, clock, db):
    hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Ana", "1155550000")

    clock.advance(minutes=10)
    assert hold_service.is_free("x", "Cancha 1", MONDAY, "19:00")[1]

    db.expire_all()
    assert db.query(Reservation).count() == 0


def test_live_claim_survives_status_reads(hold_service, clock, db):
    hold = hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Ana", "1155550000")

    clock.advance(minutes=9)
    assert hold_service.get_status(hold.slot_key).status == "hold"

    db.expire_all()
    assert db.query(Reservation).count() == 1


def test_list_reservations_is_keyed_by_slot(hold_service):
    hold_service.request_hold("x", "Cancha 1", MONDAY, "19:00", "Ana", "1155550000")
    hold_service.request_hold("x", "Cancha 1", MONDAY, "20:00", "Beto", "1155550001")

    listing = hold_service.list_reservations("x")

    assert list(listing) == ["x-cancha1-2025-03-10-19:00", "x-cancha1-2025-03-10-20:00"]
    assert listing["x-cancha1-2025-03-10-19:00"].field == "Cancha 1"
    assert listing["x-cancha1-2025-03-10-19:00"].time == "19:00"

    with pytest.raises(UnknownField):
        hold_service.list_reservations("nowhere")


def test_directory_reloads_when_a_field_is_missing(db, clock, complex_row, redis_stub):
    directory = FieldDirectory(cache=Cache(client=redis_stub), ttl_seconds=3600)
    service = HoldService(db, directory=directory, clock=clock)
    service.is_free("x", "Cancha 1", MONDAY, "19:00")

    db.add(Field(complex_id="x", name="Cancha 3", slug="cancha3", deposit_amount=Decimal("1000")))
    db.commit()

    reservation = service.request_hold("x", "Cancha 3", MONDAY, "19:00")
    assert reservation.slot_key == "x-cancha3-2025-03-10-19:00"


def test_owner_edit_on_one_worker_reaches_every_worker(db, clock, complex_row, redis_stub):
    # Two API workers, each with its own client to the same Redis
    worker_a = FieldDirectory(cache=Cache(client=redis_stub), ttl_seconds=60)
    worker_b = FieldDirectory(cache=Cache(client=redis_stub), ttl_seconds=60)
    service_a = HoldService(db, directory=worker_a, clock=clock)

    assert service_a.is_free("x", "Cancha 1", MONDAY, "21:00")[1]
    assert redis_stub.ttl["complex:x:directory"] == 60

    ComplexService(db, directory=worker_b).upsert_complex(
        "x",
        ComplexUpsert(
            name="Complejo X",
            schedules=[ScheduleIn(day_of_week=0, opens_at="09:00", closes_at="20:00")],
        ),
        "owner-secret",
    )
    assert "complex:x:directory" not in redis_stub.store

    with pytest.raises(OutOfHours):
        service_a.request_hold("x", "Cancha 1", MONDAY, "21:00", "Ana", "1155550000")


def test_directory_serves_the_cached_snapshot(db, complex_row, redis_stub):
    directory = FieldDirectory(cache=Cache(client=redis_stub), ttl_seconds=60)
    loaded = directory.get_complex(db, "x")

    # Changes made behind the cache's back stay invisible until invalidated
    db.query(Field).filter(Field.slug == "cancha1").update({Field.deposit_amount: Decimal("9000")})
    db.commit()

    cached = directory.get_complex(db, "x")
    assert cached == loaded
    assert cached.match_field("Cancha 1").deposit_amount == Decimal("5000")
    assert cached.hours[0] == (time(9, 0), time(23, 0))

    directory.invalidate("x")
    assert directory.get_complex(db, "x").match_field("Cancha 1").deposit_amount == Decimal("9000")


def test_directory_without_redis_reads_the_database(db, complex_row):
    class NoRedisCache(Cache):
        def _get_client(self):
            return None

    directory = FieldDirectory(cache=NoRedisCache(), ttl_seconds=60)
    assert directory.get_complex(db, "x").match_field("7").slug == "cancha2"
