"""
Payment intent bridge - turns a hold into a Mercado Pago checkout.

No database transaction is open while the processor is called: the
credential is read in one short session, the preference is created, then the
hold is moved to pending in another short session. If anything fails after
the hold was taken, the hold is released so the slot does not stay blocked
until the sweeper runs.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...database import SessionLocal
from ...errors import CredentialRejected, ProcessorUnavailable
from ...models import Reservation
from ...shared.clock import utcnow
from ..reservations.repository import ReservationRepository
from .credentials import Credential, CredentialStore
from .mercadopago_service import MercadoPagoClient, build_preference_body

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    redirect_url: str
    slot_key: str
    hold_deadline: Optional[datetime]


class PaymentIntentBridge:
    def __init__(
        self,
        client: Optional[MercadoPagoClient] = None,
        credentials: Optional[CredentialStore] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client or MercadoPagoClient()
        self.session_factory = session_factory
        self.credentials = credentials or CredentialStore(session_factory=session_factory)
        self.clock = clock

    async def open_intent(self, reservation: Reservation, description: str) -> IntentResult:
        """
        Create the checkout for a held reservation.

        Raises ProcessorUnavailable when no credential works, StaleHold when
        the hold expired while the processor was being called. The hold is
        released on every failure.
        """
        reservation_id = reservation.id
        slot_key = reservation.slot_key
        complex_id = reservation.complex_id
        hold_deadline = reservation.hold_deadline

        try:
            credential = await asyncio.to_thread(self.credentials.for_complex, complex_id)
            if credential is None:
                raise ProcessorUnavailable("No payment credential configured for this complex")

            body = build_preference_body(
                slot_key=slot_key,
                complex_id=complex_id,
                title=description,
                amount=reservation.deposit_amount,
                hold_deadline=hold_deadline,
                customer_name=reservation.customer_name,
                customer_phone=reservation.customer_phone,
                reservation_id=reservation_id,
            )
            preference = await self._create_preference(credential, body, f"hold-{reservation_id}-{slot_key}")
            await asyncio.to_thread(self._attach, reservation_id, preference["id"])
        except Exception:
            released = await asyncio.to_thread(self._release, reservation_id)
            if released:
                logger.info(f"🔓 Released hold on {slot_key} after intent failure")
            raise

        redirect_url = preference.get("init_point") or preference.get("sandbox_init_point")
        logger.info(f"✅ Intent {preference['id']} opened for {slot_key} via {credential.label}")
        return IntentResult(
            intent_id=preference["id"],
            redirect_url=redirect_url,
            slot_key=slot_key,
            hold_deadline=hold_deadline,
        )

    async def _create_preference(self, credential: Credential, body: dict, idempotency_key: str) -> dict:
        """One attempt, plus exactly one retry after refreshing a rejected OAuth token"""
        try:
            return await self.client.create_preference(credential.access_token, body, idempotency_key)
        except CredentialRejected:
            if not credential.can_refresh:
                logger.warning(f"⚠️ Credential {credential.label} rejected and cannot be refreshed")
                raise ProcessorUnavailable("Payment credential rejected") from None

        refreshed = await self.refresh(credential)
        try:
            return await self.client.create_preference(refreshed.access_token, body, idempotency_key)
        except CredentialRejected as e:
            logger.error(f"❌ Refreshed credential {credential.label} rejected again")
            raise ProcessorUnavailable("Payment credential rejected") from e

    async def refresh(self, credential: Credential) -> Credential:
        logger.info(f"🔄 Refreshing Mercado Pago token for {credential.label}")
        try:
            token_data = await self.client.refresh_access_token(credential.refresh_token)
        except CredentialRejected as e:
            logger.error(f"❌ Refresh token rejected for {credential.label}")
            raise ProcessorUnavailable("Payment credential could not be refreshed") from e
        return await asyncio.to_thread(self.credentials.save_refreshed, credential.complex_id, token_data)

    def _attach(self, reservation_id: int, intent_id: str) -> None:
        db = self.session_factory()
        try:
            ReservationRepository.attach_intent(db, reservation_id, intent_id, self.clock())
        finally:
            db.close()

    def _release(self, reservation_id: int) -> bool:
        db = self.session_factory()
        try:
            return ReservationRepository.release_hold(db, reservation_id)
        finally:
            db.close()
