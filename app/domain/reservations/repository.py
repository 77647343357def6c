"""
Reservation repository - the availability store.

Every write here is a single conditional statement or a single insert guarded
by the partial unique index ``uq_reservations_live_slot``. Nothing reads a
slot's state and then decides to write: the database decides, and a unique
violation is how "somebody else has it" is reported.
"""

import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, not_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ...errors import SlotTaken, StaleHold
from ...models import (
    LIVE_STATUSES,
    STATUS_APPROVED,
    STATUS_HOLD,
    STATUS_PENDING,
    BookingEvent,
    PaymentIntentRef,
    Reservation,
)

logger = logging.getLogger(__name__)


def expired_clause(now: datetime):
    """
    Rows that still sit in the unique index but no longer claim the slot:
    holds past their deadline, and pending intents that expired before any
    payment was seen.
    """
    return or_(
        and_(Reservation.status == STATUS_HOLD, Reservation.hold_deadline <= now),
        and_(
            Reservation.status == STATUS_PENDING,
            Reservation.intent_expires_at.isnot(None),
            Reservation.intent_expires_at <= now,
            Reservation.external_payment_id.is_(None),
        ),
    )


def live_clause(now: datetime):
    return and_(Reservation.status.in_(LIVE_STATUSES), not_(expired_clause(now)))


def _slot_filter(complex_id: str, field_id: int, slot_date: date, slot_time: time):
    return and_(
        Reservation.complex_id == complex_id,
        Reservation.field_id == field_id,
        Reservation.slot_date == slot_date,
        Reservation.slot_time == slot_time,
    )


class ReservationRepository:
    """Repository for reservation rows"""

    # ------------------------------------------------------------------
    # Inserts guarded by the live-slot unique index
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_live(
        db: Session,
        *,
        status: str,
        slot_key: str,
        complex_id: str,
        field_id: int,
        slot_date: date,
        slot_time: time,
        now: datetime,
        hold_deadline: Optional[datetime] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        deposit_amount: Optional[Decimal] = None,
        external_intent_id: Optional[str] = None,
        external_payment_id: Optional[str] = None,
        commit: bool = True,
    ) -> Reservation:
        slot = _slot_filter(complex_id, field_id, slot_date, slot_time)
        try:
            # Expired claims still occupy the index; clear them in the same transaction
            cleared = (
                db.query(Reservation)
                .filter(slot, expired_clause(now))
                .delete(synchronize_session=False)
            )
            if cleared:
                logger.info(f"🧹 Released {cleared} expired claim(s) on {slot_key}")

            reservation = Reservation(
                slot_key=slot_key,
                complex_id=complex_id,
                field_id=field_id,
                slot_date=slot_date,
                slot_time=slot_time,
                status=status,
                hold_deadline=hold_deadline,
                customer_name=customer_name,
                customer_phone=customer_phone,
                deposit_amount=deposit_amount,
                external_intent_id=external_intent_id,
                external_payment_id=external_payment_id,
                approved_at=now if status == STATUS_APPROVED else None,
            )
            db.add(reservation)
            db.flush()
        except IntegrityError:
            db.rollback()
            blocking = (
                db.query(Reservation)
                .filter(slot, Reservation.status.in_(LIVE_STATUSES))
                .first()
            )
            blocking_status = blocking.status if blocking else None
            logger.info(f"🔒 Slot {slot_key} already taken (status={blocking_status})")
            raise SlotTaken(status=blocking_status) from None

        if commit:
            db.commit()
            db.refresh(reservation)
        return reservation

    @staticmethod
    def try_create_hold(
        db: Session,
        *,
        slot_key: str,
        complex_id: str,
        field_id: int,
        slot_date: date,
        slot_time: time,
        hold_deadline: datetime,
        now: datetime,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        deposit_amount: Optional[Decimal] = None,
    ) -> Reservation:
        """Insert a hold if and only if no live reservation exists; raises SlotTaken"""
        return ReservationRepository._insert_live(
            db,
            status=STATUS_HOLD,
            slot_key=slot_key,
            complex_id=complex_id,
            field_id=field_id,
            slot_date=slot_date,
            slot_time=slot_time,
            now=now,
            hold_deadline=hold_deadline,
            customer_name=customer_name,
            customer_phone=customer_phone,
            deposit_amount=deposit_amount,
        )

    @staticmethod
    def create_owner_reservation(
        db: Session,
        *,
        status: str,
        slot_key: str,
        complex_id: str,
        field_id: int,
        slot_date: date,
        slot_time: time,
        now: datetime,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> Reservation:
        """Manual booking or block; same uniqueness rules as a customer hold"""
        return ReservationRepository._insert_live(
            db,
            status=status,
            slot_key=slot_key,
            complex_id=complex_id,
            field_id=field_id,
            slot_date=slot_date,
            slot_time=slot_time,
            now=now,
            customer_name=customer_name,
            customer_phone=customer_phone,
        )

    @staticmethod
    def materialize_approved(
        db: Session,
        *,
        slot_key: str,
        complex_id: str,
        field_id: int,
        slot_date: date,
        slot_time: time,
        now: datetime,
        external_payment_id: str,
        external_intent_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        deposit_amount: Optional[Decimal] = None,
    ) -> Reservation:
        """
        Approved booking for a payment whose hold was already gone.

        Not committed: the caller records the outbox event in the same
        transaction. Raises SlotTaken when another claim occupies the slot.
        """
        return ReservationRepository._insert_live(
            db,
            status=STATUS_APPROVED,
            slot_key=slot_key,
            complex_id=complex_id,
            field_id=field_id,
            slot_date=slot_date,
            slot_time=slot_time,
            now=now,
            customer_name=customer_name,
            customer_phone=customer_phone,
            deposit_amount=deposit_amount,
            external_intent_id=external_intent_id,
            external_payment_id=external_payment_id,
            commit=False,
        )

    # ------------------------------------------------------------------
    # Conditional transitions
    # ------------------------------------------------------------------

    @staticmethod
    def attach_intent(db: Session, reservation_id: int, external_intent_id: str, now: datetime) -> Reservation:
        """
        hold -> pending, recording the intent and its index entry.

        The hold deadline becomes the intent expiry. Raises StaleHold when the
        row is gone, no longer a hold, or already past its deadline.
        """
        updated = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status == STATUS_HOLD,
                Reservation.hold_deadline > now,
            )
            .update(
                {
                    Reservation.status: STATUS_PENDING,
                    Reservation.external_intent_id: external_intent_id,
                    Reservation.intent_expires_at: Reservation.hold_deadline,
                    Reservation.hold_deadline: None,
                    Reservation.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise StaleHold()

        reservation = db.get(Reservation, reservation_id, populate_existing=True)
        db.add(
            PaymentIntentRef(
                external_intent_id=external_intent_id,
                slot_key=reservation.slot_key,
                complex_id=reservation.complex_id,
                reservation_id=reservation.id,
                customer_name=reservation.customer_name,
                customer_phone=reservation.customer_phone,
                deposit_amount=reservation.deposit_amount,
                created_at=now,
            )
        )
        db.commit()
        db.refresh(reservation)
        return reservation

    @staticmethod
    def approve(db: Session, reservation_id: int, external_payment_id: str, now: datetime) -> bool:
        """
        hold/pending -> approved. Returns False when the row was already
        approved (or is not a customer claim), which is how duplicates are
        detected. Does not commit: the caller writes the outbox event in the
        same transaction.
        """
        updated = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status.in_((STATUS_HOLD, STATUS_PENDING)),
            )
            .update(
                {
                    Reservation.status: STATUS_APPROVED,
                    Reservation.external_payment_id: external_payment_id,
                    Reservation.hold_deadline: None,
                    Reservation.intent_expires_at: None,
                    Reservation.approved_at: now,
                    Reservation.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def mark_pending(db: Session, reservation_id: int, external_payment_id: str, now: datetime) -> bool:
        """hold/pending -> pending with a payment in process; never touches approved rows"""
        updated = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status.in_((STATUS_HOLD, STATUS_PENDING)),
            )
            .update(
                {
                    Reservation.status: STATUS_PENDING,
                    Reservation.external_payment_id: external_payment_id,
                    Reservation.hold_deadline: None,
                    Reservation.intent_expires_at: None,
                    Reservation.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return updated == 1

    @staticmethod
    def delete_for_failure(db: Session, reservation_id: int, external_payment_id: str) -> bool:
        """
        Free the slot after a rejected/cancelled payment. An approved row is
        only removed by a failure of the payment that approved it.
        """
        deleted = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status.in_((STATUS_HOLD, STATUS_PENDING, STATUS_APPROVED)),
                or_(
                    Reservation.status != STATUS_APPROVED,
                    Reservation.external_payment_id == external_payment_id,
                ),
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted == 1

    @staticmethod
    def release_hold(db: Session, reservation_id: int) -> bool:
        """Delete a hold that never reached the processor"""
        deleted = (
            db.query(Reservation)
            .filter(Reservation.id == reservation_id, Reservation.status == STATUS_HOLD)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted == 1

    @staticmethod
    def has_expired_claim(db: Session, slot_key: str, now: datetime) -> bool:
        return (
            db.query(Reservation.id)
            .filter(Reservation.slot_key == slot_key, expired_clause(now))
            .first()
            is not None
        )

    @staticmethod
    def release_if_expired(db: Session, slot_key: str, now: datetime) -> int:
        deleted = (
            db.query(Reservation)
            .filter(Reservation.slot_key == slot_key, expired_clause(now))
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted

    @staticmethod
    def sweep_expired(db: Session, now: datetime) -> int:
        """Delete every expired claim; the condition is re-checked by the DELETE itself"""
        deleted = db.query(Reservation).filter(expired_clause(now)).delete(synchronize_session=False)
        db.commit()
        return deleted

    @staticmethod
    def delete_owner_reservation(db: Session, complex_id: str, slot_key: str) -> int:
        deleted = (
            db.query(Reservation)
            .filter(
                Reservation.complex_id == complex_id,
                Reservation.slot_key == slot_key,
                Reservation.status.in_(LIVE_STATUSES),
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get_live(db: Session, slot_key: str, now: datetime) -> Optional[Reservation]:
        """Current claim on a slot; expired claims read as absent"""
        return db.query(Reservation).filter(Reservation.slot_key == slot_key, live_clause(now)).first()

    @staticmethod
    def is_slot_free(
        db: Session, complex_id: str, field_id: int, slot_date: date, slot_time: time, now: datetime
    ) -> bool:
        return (
            db.query(Reservation.id)
            .filter(_slot_filter(complex_id, field_id, slot_date, slot_time), live_clause(now))
            .first()
            is None
        )

    @staticmethod
    def list_live(db: Session, complex_id: str, now: datetime) -> list[Reservation]:
        return (
            db.query(Reservation)
            .options(joinedload(Reservation.field))
            .filter(Reservation.complex_id == complex_id, live_clause(now))
            .order_by(Reservation.slot_date, Reservation.slot_time)
            .all()
        )

    @staticmethod
    def find_claim(db: Session, slot_key: str) -> Optional[Reservation]:
        """Row occupying the slot regardless of expiry (a late payment still counts)"""
        return (
            db.query(Reservation)
            .filter(Reservation.slot_key == slot_key, Reservation.status.in_(LIVE_STATUSES))
            .first()
        )

    @staticmethod
    def get_intent_ref(db: Session, external_intent_id: str) -> Optional[PaymentIntentRef]:
        return (
            db.query(PaymentIntentRef)
            .filter(PaymentIntentRef.external_intent_id == external_intent_id)
            .first()
        )

    @staticmethod
    def get_intent_ref_by_payment(db: Session, external_payment_id: str) -> Optional[PaymentIntentRef]:
        return (
            db.query(PaymentIntentRef)
            .filter(PaymentIntentRef.last_payment_id == external_payment_id)
            .first()
        )

    @staticmethod
    def remember_payment(db: Session, external_intent_id: str, external_payment_id: str) -> None:
        db.query(PaymentIntentRef).filter(
            PaymentIntentRef.external_intent_id == external_intent_id
        ).update({PaymentIntentRef.last_payment_id: external_payment_id}, synchronize_session=False)
        db.commit()

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    @staticmethod
    def add_event(
        db: Session,
        *,
        event_type: str,
        slot_key: str,
        complex_id: str,
        external_payment_id: str,
        reservation_id: Optional[int] = None,
        payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> BookingEvent:
        event = BookingEvent(
            event_type=event_type,
            slot_key=slot_key,
            complex_id=complex_id,
            reservation_id=reservation_id,
            external_payment_id=external_payment_id,
            payload=payload or {},
        )
        if now is not None:
            event.created_at = now
        db.add(event)
        return event
