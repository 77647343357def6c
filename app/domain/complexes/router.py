"""Complex router - Public complex data and owner endpoints"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ...database import get_db
from ...shared.slots import format_time
from ..reservations.schemas import ReservationSummary
from ..reservations.service import HoldService
from .schemas import (
    ComplexResponse,
    ComplexUpsert,
    FieldResponse,
    MercadoPagoCredentialsIn,
    MercadoPagoOAuthIn,
    OwnerReservationCreate,
    ScheduleIn,
)
from .service import ComplexService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/complexes", tags=["Complexes"])
owner_router = APIRouter(prefix="/owner/complexes", tags=["Owner"])


def get_complex_service(db: Session = Depends(get_db)) -> ComplexService:
    """Dependency injection for ComplexService"""
    return ComplexService(db)


def get_hold_service(db: Session = Depends(get_db)) -> HoldService:
    return HoldService(db)


def _complex_response(service: ComplexService, complex_id: str) -> ComplexResponse:
    complex_row = service.get_complex(complex_id)
    return ComplexResponse(
        id=complex_row.id,
        name=complex_row.name,
        city=complex_row.city,
        timezone=complex_row.timezone,
        fields=[FieldResponse.model_validate(f) for f in service.repo.get_fields(service.db, complex_id)],
        schedules=[
            ScheduleIn(day_of_week=s.day_of_week, opens_at=format_time(s.opens_at), closes_at=format_time(s.closes_at))
            for s in service.repo.get_schedules(service.db, complex_id)
        ],
    )


# ============================================================================
# PUBLIC
# ============================================================================


@router.get("/{complex_id}", response_model=ComplexResponse)
async def get_complex(complex_id: str, service: ComplexService = Depends(get_complex_service)):
    """Fields and weekly hours of a complex (booking page)"""
    return _complex_response(service, complex_id)


@router.get("/{complex_id}/reservations", response_model=dict[str, ReservationSummary])
async def list_reservations(complex_id: str, service: HoldService = Depends(get_hold_service)):
    """Live reservations of a complex keyed by slot key"""
    return service.list_reservations(complex_id)


# ============================================================================
# OWNER (X-Owner-Key)
# ============================================================================


@owner_router.put("/{complex_id}", response_model=ComplexResponse)
async def upsert_complex(
    complex_id: str,
    data: ComplexUpsert,
    owner_key: Optional[str] = Header(None, alias="X-Owner-Key"),
    service: ComplexService = Depends(get_complex_service),
):
    """Create or update a complex with its fields and hours"""
    service.upsert_complex(complex_id, data, owner_key)
    return _complex_response(service, complex_id)


@owner_router.post("/{complex_id}/reservations", response_model=ReservationSummary, status_code=201)
async def create_owner_reservation(
    complex_id: str,
    data: OwnerReservationCreate,
    owner_key: Optional[str] = Header(None, alias="X-Owner-Key"),
    service: ComplexService = Depends(get_complex_service),
):
    """Manual booking or block; 409 slot_taken when the slot is occupied"""
    complex_row = service.verify_owner(complex_id, owner_key)
    reservation = service.create_owner_reservation(
        complex_row,
        data.field,
        data.date,
        data.time,
        data.status,
        customer_name=data.customer_name,
        customer_phone=data.customer_phone,
    )
    return ReservationSummary(
        status=reservation.status,
        field=reservation.field.name,
        date=reservation.slot_date,
        time=format_time(reservation.slot_time),
        customer_name=reservation.customer_name,
        customer_phone=reservation.customer_phone,
        blocked=reservation.status == "blocked",
    )


@owner_router.delete("/{complex_id}/reservations/{slot_key}")
async def delete_owner_reservation(
    complex_id: str,
    slot_key: str,
    owner_key: Optional[str] = Header(None, alias="X-Owner-Key"),
    service: ComplexService = Depends(get_complex_service),
):
    """Free a slot (cancel a booking or remove a block)"""
    complex_row = service.verify_owner(complex_id, owner_key)
    service.delete_owner_reservation(complex_row, slot_key)
    return {"message": "Reservation deleted", "slot_key": slot_key}


@owner_router.put("/{complex_id}/mercadopago")
async def set_mercadopago_credentials(
    complex_id: str,
    data: MercadoPagoCredentialsIn,
    owner_key: Optional[str] = Header(None, alias="X-Owner-Key"),
    service: ComplexService = Depends(get_complex_service),
):
    """Store a manually pasted Mercado Pago access token"""
    complex_row = service.verify_owner(complex_id, owner_key)
    if not data.access_token.strip():
        raise HTTPException(status_code=400, detail="access_token is required")
    service.set_manual_credentials(complex_row, data)
    return {"message": "Mercado Pago credentials saved", "source": "legacy"}


@owner_router.put("/{complex_id}/mercadopago/oauth")
async def set_mercadopago_oauth(
    complex_id: str,
    data: MercadoPagoOAuthIn,
    owner_key: Optional[str] = Header(None, alias="X-Owner-Key"),
    service: ComplexService = Depends(get_complex_service),
):
    """Store the tokens obtained when the owner connected their Mercado Pago account"""
    complex_row = service.verify_owner(complex_id, owner_key)
    service.set_oauth_tokens(complex_row, data)
    return {"message": "Mercado Pago account connected", "source": "oauth"}
