"""Reservation domain schemas - Pydantic models for checkout and status"""

import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import validate_phone


class CheckoutRequest(BaseModel):
    """Slot descriptor plus customer data submitted by the booking page"""

    complex_id: str
    field: str
    date: dt.date
    time: str
    customer_name: str
    customer_phone: str
    deposit_amount: Optional[Decimal] = None

    @field_validator("customer_name")
    @classmethod
    def validate_name(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("Customer name is required")
        if len(v) > 255:
            raise ValueError("Customer name must be less than 255 characters")
        return v

    @field_validator("customer_phone")
    @classmethod
    def validate_customer_phone(cls, v):
        if not v or not v.strip():
            raise ValueError("Customer phone is required")
        return validate_phone(v)


class CheckoutResponse(BaseModel):
    intent_id: str
    redirect_url: str
    slot_key: str
    hold_deadline: Optional[dt.datetime] = None


class AvailabilityResponse(BaseModel):
    slot_key: str
    free: bool


class ReservationStatusResponse(BaseModel):
    """Status of a slot; ``none`` when nothing claims it"""

    slot_key: str
    status: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    deposit_amount: Optional[Decimal] = None
    hold_deadline: Optional[dt.datetime] = None
    approved_at: Optional[dt.datetime] = None


class ReservationSummary(BaseModel):
    """One entry of the per-complex listing, keyed by slot key"""

    status: str
    field: str
    date: dt.date
    time: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    deposit_amount: Optional[Decimal] = None
    external_intent_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    hold_deadline: Optional[dt.datetime] = None
    blocked: bool = False
