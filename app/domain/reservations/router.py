"""Reservation router - Checkout, availability and slot status endpoints"""

import asyncio
import datetime as dt
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...shared.slots import format_date
from ..payments.intent_bridge import PaymentIntentBridge
from .schemas import AvailabilityResponse, CheckoutRequest, CheckoutResponse, ReservationStatusResponse
from .service import HoldService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reservations", tags=["Reservations"])

_bridge: Optional[PaymentIntentBridge] = None


def get_hold_service(db: Session = Depends(get_db)) -> HoldService:
    """Dependency injection for HoldService"""
    return HoldService(db)


def get_intent_bridge() -> PaymentIntentBridge:
    """Dependency injection for the shared PaymentIntentBridge"""
    global _bridge
    if _bridge is None:
        _bridge = PaymentIntentBridge()
    return _bridge


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    data: CheckoutRequest,
    service: HoldService = Depends(get_hold_service),
    bridge: PaymentIntentBridge = Depends(get_intent_bridge),
):
    """
    Hold the slot and open a Mercado Pago checkout for the deposit.

    Answers with the redirect URL, or a typed error: slot_taken (409),
    out_of_hours / in_the_past (422), unknown_field (404),
    processor_unavailable (503), stale_hold (409).
    """
    logger.info(f"📥 Checkout request for {data.complex_id}/{data.field} {data.date} {data.time}")
    reservation = await asyncio.to_thread(
        service.request_hold,
        data.complex_id,
        data.field,
        data.date,
        data.time,
        data.customer_name,
        data.customer_phone,
        data.deposit_amount,
    )
    description = f"Seña reserva {data.field} {format_date(data.date)} {data.time}"
    result = await bridge.open_intent(reservation, description)
    return CheckoutResponse(
        intent_id=result.intent_id,
        redirect_url=result.redirect_url,
        slot_key=result.slot_key,
        hold_deadline=result.hold_deadline,
    )


@router.get("/availability", response_model=AvailabilityResponse)
async def availability(
    complex_id: str = Query(...),
    field: str = Query(...),
    date: dt.date = Query(...),
    time: str = Query(...),
    service: HoldService = Depends(get_hold_service),
):
    """Whether a slot is free right now; expired holds count as free"""
    slot_key, free = await asyncio.to_thread(service.is_free, complex_id, field, date, time)
    return AvailabilityResponse(slot_key=slot_key, free=free)


@router.get("/{slot_key}", response_model=ReservationStatusResponse)
async def reservation_status(slot_key: str, service: HoldService = Depends(get_hold_service)):
    """Current status of a slot, or status "none" when nothing claims it"""
    return await asyncio.to_thread(service.get_status, slot_key)
