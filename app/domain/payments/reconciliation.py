"""
Reconciliation engine - applies Mercado Pago payment notifications.

Notifications arrive at least once, in any order, possibly concurrently and
possibly long after the hold expired. The engine never trusts the
notification body: it re-fetches the payment and applies the outcome with
conditional statements only, so replaying a notification is harmless.

Outcomes:

- success: hold/pending -> approved, plus exactly one ``booking.approved``
  outbox event (written only when the update actually changed a row);
- failure: the claim is deleted, except that an approved booking is only
  removed by a failure of the payment that approved it;
- anything else: the claim is marked pending with the payment id, which stops
  the sweeper from reclaiming it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...database import SessionLocal
from ...errors import InvalidSlotKey, MalformedNotification, ProcessorError, SlotTaken
from ...models import (
    EVENT_BOOKING_APPROVED,
    EVENT_PAYMENT_ORPHANED,
    STATUS_APPROVED,
    STATUS_HOLD,
    STATUS_PENDING,
    Field,
    Reservation,
)
from ...services.notification_service import BookingNotifier
from ...shared.clock import utcnow
from ...shared.slots import format_date, format_time, parse_slot_key
from ..reservations.repository import ReservationRepository
from .credentials import CredentialStore
from .mercadopago_service import MercadoPagoClient

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_PENDING = "pending"

FAILURE_STATUSES = {"rejected", "cancelled", "refunded", "charged_back"}

# What apply_notification did, for logs and tests
RESULT_APPROVED = "approved"
RESULT_DUPLICATE = "duplicate"
RESULT_MATERIALIZED = "materialized"
RESULT_ORPHANED = "orphaned"
RESULT_RELEASED = "released"
RESULT_PENDING = "pending"
RESULT_IGNORED = "ignored"


def classify_status(status: Optional[str]) -> str:
    if status == "approved":
        return OUTCOME_SUCCESS
    if status in FAILURE_STATUSES:
        return OUTCOME_FAILURE
    return OUTCOME_PENDING


def extract_payment_id(payload: Optional[dict], query: Optional[dict] = None) -> Optional[str]:
    """
    Payment id from a webhook body or IPN query string.

    Returns None for topics other than payment (merchant orders, plans...).
    Raises MalformedNotification when a payment notification has no id.
    """
    payload = payload or {}
    query = query or {}

    topic = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")
    if topic and topic != "payment":
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    candidates = [data.get("id"), query.get("data.id")]
    resource = payload.get("resource")
    if isinstance(resource, str) and resource:
        candidates.append(resource.rstrip("/").rsplit("/", 1)[-1])
    if "data" not in payload or payload.get("topic"):
        # IPN style: the notification's own id is the payment id. In webhook
        # bodies it is the notification id, so an empty data block is malformed.
        candidates.extend([payload.get("id"), query.get("id")])

    for candidate in candidates:
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()
    raise MalformedNotification()


@dataclass
class RecoveredSlot:
    slot_key: str
    intent_id: Optional[str] = None
    reservation_id: Optional[int] = None
    # True when intent_id was confirmed through the intent index
    indexed: bool = False
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    deposit_amount: Optional[Decimal] = None


class ReconciliationEngine:
    def __init__(
        self,
        client: Optional[MercadoPagoClient] = None,
        credentials: Optional[CredentialStore] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[BookingNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client or MercadoPagoClient()
        self.session_factory = session_factory
        self.credentials = credentials or CredentialStore(session_factory=session_factory)
        self.notifier = notifier or BookingNotifier()
        self.clock = clock

    async def apply_notification(self, payload: Optional[dict], query: Optional[dict] = None) -> str:
        """Apply one notification. Never raises: every failure is logged and discarded"""
        try:
            return await self._apply(payload, query)
        except MalformedNotification as e:
            logger.warning(f"⚠️ Discarding notification: {e.message} ({payload})")
        except Exception as e:
            logger.exception(f"❌ Error reconciling notification {payload}: {e}")
        return RESULT_IGNORED

    async def _apply(self, payload: Optional[dict], query: Optional[dict]) -> str:
        payment_id = extract_payment_id(payload, query)
        if payment_id is None:
            logger.debug(f"Ignoring non-payment notification: {payload}")
            return RESULT_IGNORED

        payment = await self.fetch_payment(payment_id)
        if payment is None:
            logger.warning(f"⚠️ Payment {payment_id} could not be fetched with any credential")
            return RESULT_IGNORED

        recovered = await asyncio.to_thread(self._recover_slot, payment, payment_id)
        if recovered is None:
            logger.warning(f"⚠️ Payment {payment_id} does not map to any slot")
            return RESULT_IGNORED

        outcome = classify_status(payment.get("status"))
        logger.info(
            f"🔔 Payment {payment_id} for {recovered.slot_key}: status={payment.get('status')} -> {outcome}"
        )
        result, event_ids = await asyncio.to_thread(
            self._apply_outcome, recovered, payment_id, outcome, payment
        )
        if event_ids:
            await self.notifier.notify(event_ids)
        return result

    async def fetch_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """Try every known credential in order; the payment belongs to exactly one seller"""
        credentials = await asyncio.to_thread(self.credentials.all_known)
        for credential in credentials:
            try:
                return await self.client.get_payment(credential.access_token, payment_id)
            except ProcessorError as e:
                logger.debug(f"Payment {payment_id} not readable with {credential.label}: {e.code}")
        return None

    # ------------------------------------------------------------------
    # Slot recovery
    # ------------------------------------------------------------------

    def _recover_slot(self, payment: Dict[str, Any], payment_id: str) -> Optional[RecoveredSlot]:
        metadata = payment.get("metadata") or {}
        order = payment.get("order") or {}
        intent_ids = [
            str(v)
            for v in (payment.get("preference_id"), metadata.get("preference_id"), order.get("id"))
            if v
        ]

        db = self.session_factory()
        try:
            ref = None
            for intent_id in intent_ids:
                ref = ReservationRepository.get_intent_ref(db, intent_id)
                if ref:
                    break
            if ref is None:
                ref = ReservationRepository.get_intent_ref_by_payment(db, payment_id)

            slot_key = None
            for candidate in (metadata.get("slot_key"), payment.get("external_reference"), ref and ref.slot_key):
                if not candidate:
                    continue
                try:
                    parse_slot_key(candidate)
                except InvalidSlotKey:
                    logger.warning(f"⚠️ Payment {payment_id} carries an invalid slot key: {candidate!r}")
                    continue
                slot_key = candidate
                break
            if slot_key is None:
                return None

            if ref is not None and ref.slot_key != slot_key:
                ref = None

            reservation_id = metadata.get("reservation_id") or (ref.reservation_id if ref else None)
            try:
                reservation_id = int(reservation_id) if reservation_id is not None else None
            except (TypeError, ValueError):
                reservation_id = None

            if ref is None:
                return RecoveredSlot(
                    slot_key=slot_key,
                    intent_id=intent_ids[0] if intent_ids else None,
                    reservation_id=reservation_id,
                )

            recovered = RecoveredSlot(
                slot_key=slot_key,
                intent_id=ref.external_intent_id,
                reservation_id=reservation_id,
                indexed=True,
                customer_name=ref.customer_name,
                customer_phone=ref.customer_phone,
                deposit_amount=ref.deposit_amount,
            )
            ReservationRepository.remember_payment(db, ref.external_intent_id, payment_id)
            return recovered
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Applying outcomes
    # ------------------------------------------------------------------

    @staticmethod
    def _belongs(claim: Reservation, recovered: RecoveredSlot, payment_id: str) -> bool:
        """Whether the live claim on the slot is the one this payment was opened for"""
        if claim.status not in (STATUS_HOLD, STATUS_PENDING, STATUS_APPROVED):
            return False
        if claim.external_payment_id and claim.external_payment_id == payment_id:
            return True
        if recovered.reservation_id is not None:
            return claim.id == recovered.reservation_id
        if recovered.indexed and claim.external_intent_id:
            return claim.external_intent_id == recovered.intent_id
        if claim.external_payment_id:
            return False
        # Nothing to compare against; the customer claim on the slot is taken to be ours
        return True

    def _apply_outcome(
        self, recovered: RecoveredSlot, payment_id: str, outcome: str, payment: Dict[str, Any]
    ) -> tuple[str, list[int]]:
        db = self.session_factory()
        try:
            now = self.clock()
            claim = ReservationRepository.find_claim(db, recovered.slot_key)
            belongs = claim is not None and self._belongs(claim, recovered, payment_id)

            if outcome == OUTCOME_SUCCESS:
                return self._apply_success(db, claim, belongs, recovered, payment_id, payment, now)

            if outcome == OUTCOME_FAILURE:
                if not belongs:
                    logger.info(f"ℹ️ Failure for payment {payment_id} ignored: {recovered.slot_key} is not its claim")
                    return RESULT_IGNORED, []
                if ReservationRepository.delete_for_failure(db, claim.id, payment_id):
                    logger.info(f"🔓 Released {recovered.slot_key} after payment {payment_id} failed")
                    return RESULT_RELEASED, []
                logger.info(f"ℹ️ Failure for payment {payment_id} left {recovered.slot_key} untouched")
                return RESULT_IGNORED, []

            if belongs and ReservationRepository.mark_pending(db, claim.id, payment_id, now):
                logger.info(f"⏳ {recovered.slot_key} pending with payment {payment_id}")
                return RESULT_PENDING, []
            logger.info(f"ℹ️ Non-terminal update for payment {payment_id} ignored on {recovered.slot_key}")
            return RESULT_IGNORED, []
        finally:
            db.close()

    def _apply_success(
        self,
        db: Session,
        claim: Optional[Reservation],
        belongs: bool,
        recovered: RecoveredSlot,
        payment_id: str,
        payment: Dict[str, Any],
        now: datetime,
    ) -> tuple[str, list[int]]:
        slot_key = recovered.slot_key

        if claim is not None and claim.status == STATUS_APPROVED and claim.external_payment_id == payment_id:
            logger.info(f"ℹ️ Payment {payment_id} already applied to {slot_key}")
            return RESULT_DUPLICATE, []

        if claim is not None and claim.status == STATUS_APPROVED:
            # Booked by another payment; this one was charged for nothing
            return self._record_orphan(db, recovered, payment_id, payment, now)

        if claim is not None and belongs:
            if not ReservationRepository.approve(db, claim.id, payment_id, now):
                db.rollback()
                logger.info(f"ℹ️ {slot_key} was approved concurrently; no new trigger")
                return RESULT_DUPLICATE, []
            db.refresh(claim)
            event = ReservationRepository.add_event(
                db,
                event_type=EVENT_BOOKING_APPROVED,
                slot_key=slot_key,
                complex_id=claim.complex_id,
                external_payment_id=payment_id,
                reservation_id=claim.id,
                payload=self._event_payload(claim, payment),
                now=now,
            )
            return self._commit_event(db, event, RESULT_APPROVED, f"✅ {slot_key} approved by payment {payment_id}")

        if claim is None:
            reservation = self._materialize(db, recovered, payment_id, payment, now)
            if reservation is not None:
                event = ReservationRepository.add_event(
                    db,
                    event_type=EVENT_BOOKING_APPROVED,
                    slot_key=slot_key,
                    complex_id=reservation.complex_id,
                    external_payment_id=payment_id,
                    reservation_id=reservation.id,
                    payload=self._event_payload(reservation, payment),
                    now=now,
                )
                return self._commit_event(
                    db, event, RESULT_MATERIALIZED, f"✅ {slot_key} booked from late payment {payment_id}"
                )

        return self._record_orphan(db, recovered, payment_id, payment, now)

    def _materialize(
        self, db: Session, recovered: RecoveredSlot, payment_id: str, payment: Dict[str, Any], now: datetime
    ) -> Optional[Reservation]:
        """Recreate an approved booking for a payment whose claim already expired"""
        key = parse_slot_key(recovered.slot_key)
        field = (
            db.query(Field)
            .filter(Field.complex_id == key.complex_id, Field.slug == key.field_slug)
            .first()
        )
        if field is None:
            logger.warning(f"⚠️ Field for {recovered.slot_key} no longer exists")
            return None

        payer = payment.get("payer") or {}
        try:
            return ReservationRepository.materialize_approved(
                db,
                slot_key=recovered.slot_key,
                complex_id=key.complex_id,
                field_id=field.id,
                slot_date=key.slot_date,
                slot_time=key.slot_time,
                now=now,
                external_payment_id=payment_id,
                external_intent_id=recovered.intent_id,
                customer_name=recovered.customer_name or payer.get("first_name"),
                customer_phone=recovered.customer_phone,
                deposit_amount=recovered.deposit_amount or _amount(payment.get("transaction_amount")),
            )
        except SlotTaken:
            return None

    def _record_orphan(
        self, db: Session, recovered: RecoveredSlot, payment_id: str, payment: Dict[str, Any], now: datetime
    ) -> tuple[str, list[int]]:
        key = parse_slot_key(recovered.slot_key)
        event = ReservationRepository.add_event(
            db,
            event_type=EVENT_PAYMENT_ORPHANED,
            slot_key=recovered.slot_key,
            complex_id=key.complex_id,
            external_payment_id=payment_id,
            payload={
                "status": payment.get("status"),
                "amount": str(payment.get("transaction_amount")),
                "intent_id": recovered.intent_id,
            },
            now=now,
        )
        return self._commit_event(
            db,
            event,
            RESULT_ORPHANED,
            f"🚨 Approved payment {payment_id} has no slot to book on {recovered.slot_key}; needs manual reconciliation",
        )

    @staticmethod
    def _commit_event(db: Session, event, result: str, message: str) -> tuple[str, list[int]]:
        event_type, payment_id = event.event_type, event.external_payment_id
        try:
            db.commit()
        except IntegrityError:
            # Unique (event_type, payment) already recorded by another delivery
            db.rollback()
            logger.info(f"ℹ️ Event {event_type} for payment {payment_id} already recorded")
            return RESULT_DUPLICATE, []
        if result == RESULT_ORPHANED:
            logger.error(message)
        else:
            logger.info(message)
        return result, [event.id]

    @staticmethod
    def _event_payload(reservation: Reservation, payment: Dict[str, Any]) -> dict:
        key = parse_slot_key(reservation.slot_key)
        return {
            "field_slug": key.field_slug,
            "date": format_date(reservation.slot_date),
            "time": format_time(reservation.slot_time),
            "customer_name": reservation.customer_name,
            "customer_phone": reservation.customer_phone,
            "deposit_amount": str(reservation.deposit_amount) if reservation.deposit_amount is not None else None,
            "payment_status": payment.get("status"),
        }


def _amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
