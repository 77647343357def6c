"""
Hold service - validates a slot request and claims it.

Validation order: the field must exist, the slot must be in the future in the
complex's own timezone, and it must fall inside that weekday's operating
hours. Only then is the atomic insert attempted; its outcome is final.
"""

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from ...config import HOLD_TTL_MINUTES
from ...errors import InThePast, InvalidDeposit, OutOfHours, UnknownField
from ...models import STATUS_BLOCKED, Reservation
from ...shared.clock import local_now, slot_datetime, utcnow, within_hours
from ...shared.slots import build_slot_key, format_time, parse_slot_key, parse_time
from ..complexes.directory import ComplexSnapshot, FieldDirectory, FieldInfo, field_directory
from .repository import ReservationRepository
from .schemas import ReservationStatusResponse, ReservationSummary

logger = logging.getLogger(__name__)


class HoldService:
    """Service layer for holds, availability and status queries"""

    def __init__(
        self,
        db: Session,
        directory: FieldDirectory = field_directory,
        clock: Callable[[], datetime] = utcnow,
        hold_ttl_minutes: int = HOLD_TTL_MINUTES,
    ):
        self.db = db
        self.directory = directory
        self.clock = clock
        self.hold_ttl = timedelta(minutes=hold_ttl_minutes)
        self.repo = ReservationRepository()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def check_bookable(snapshot: ComplexSnapshot, slot_date: date, slot_time, now: datetime) -> None:
        """Raise InThePast or OutOfHours; times are wall-clock in the complex's timezone"""
        if slot_datetime(slot_date, slot_time) <= local_now(snapshot.timezone, now):
            raise InThePast()

        hours = snapshot.hours.get(slot_date.weekday())
        if hours is None:
            raise OutOfHours("The complex is closed that day")
        opens_at, closes_at = hours
        if not within_hours(slot_time, opens_at, closes_at):
            raise OutOfHours(
                f"{format_time(slot_time)} is outside operating hours "
                f"({format_time(opens_at)}-{format_time(closes_at)})"
            )

    @staticmethod
    def resolve_deposit(field: FieldInfo, requested: Optional[Decimal]) -> Decimal:
        """The field's configured deposit wins over the amount in the request"""
        amount = field.deposit_amount if field.deposit_amount is not None else requested
        if amount is None or Decimal(amount) <= 0:
            raise InvalidDeposit()
        return Decimal(amount)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def request_hold(
        self,
        complex_id: str,
        field_name: str,
        slot_date: date,
        slot_time: Union[str, time],
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        deposit_amount: Optional[Decimal] = None,
    ) -> Reservation:
        """Claim a slot for HOLD_TTL_MINUTES; raises a BookingError subclass on refusal"""
        snapshot, field = self.directory.resolve_field(self.db, complex_id, field_name)
        parsed_time = parse_time(slot_time) if isinstance(slot_time, str) else slot_time
        now = self.clock()

        self.check_bookable(snapshot, slot_date, parsed_time, now)
        amount = self.resolve_deposit(field, deposit_amount)

        slot_key = build_slot_key(complex_id, field.name, slot_date, parsed_time)
        reservation = self.repo.try_create_hold(
            self.db,
            slot_key=slot_key,
            complex_id=complex_id,
            field_id=field.id,
            slot_date=slot_date,
            slot_time=parsed_time,
            hold_deadline=now + self.hold_ttl,
            now=now,
            customer_name=customer_name,
            customer_phone=customer_phone,
            deposit_amount=amount,
        )
        logger.info(f"⏳ Hold created on {slot_key} until {reservation.hold_deadline.isoformat()}")
        return reservation

    def _release_stale(self, slot_key: str, now: datetime) -> None:
        """Drop an expired claim found by a read instead of leaving it for the sweeper"""
        if self.repo.has_expired_claim(self.db, slot_key, now):
            if self.repo.release_if_expired(self.db, slot_key, now):
                logger.info(f"🧹 Released expired claim on {slot_key} during read")

    def is_free(self, complex_id: str, field_name: str, slot_date: date, slot_time: str) -> tuple[str, bool]:
        _, field = self.directory.resolve_field(self.db, complex_id, field_name)
        parsed_time = parse_time(slot_time)
        slot_key = build_slot_key(complex_id, field.name, slot_date, parsed_time)
        now = self.clock()
        self._release_stale(slot_key, now)
        free = self.repo.is_slot_free(self.db, complex_id, field.id, slot_date, parsed_time, now)
        return slot_key, free

    def get_status(self, slot_key: str) -> ReservationStatusResponse:
        parse_slot_key(slot_key)
        now = self.clock()
        self._release_stale(slot_key, now)
        reservation = self.repo.get_live(self.db, slot_key, now)
        if not reservation:
            return ReservationStatusResponse(slot_key=slot_key, status="none")
        return ReservationStatusResponse(
            slot_key=slot_key,
            status=reservation.status,
            customer_name=reservation.customer_name,
            customer_phone=reservation.customer_phone,
            deposit_amount=reservation.deposit_amount,
            hold_deadline=reservation.hold_deadline,
            approved_at=reservation.approved_at,
        )

    def list_reservations(self, complex_id: str) -> dict[str, ReservationSummary]:
        """Live reservations of a complex keyed by slot key"""
        if not self.directory.get_complex(self.db, complex_id):
            raise UnknownField(f"Unknown complex: {complex_id}")

        out = {}
        for r in self.repo.list_live(self.db, complex_id, self.clock()):
            out[r.slot_key] = ReservationSummary(
                status=r.status,
                field=r.field.name if r.field else "",
                date=r.slot_date,
                time=format_time(r.slot_time),
                customer_name=r.customer_name,
                customer_phone=r.customer_phone,
                deposit_amount=r.deposit_amount,
                external_intent_id=r.external_intent_id,
                external_payment_id=r.external_payment_id,
                hold_deadline=r.hold_deadline,
                blocked=r.status == STATUS_BLOCKED,
            )
        return out
