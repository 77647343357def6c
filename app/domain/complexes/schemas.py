"""Complex domain schemas - Pydantic models for owner operations"""

import datetime as dt
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from ...shared.slots import format_time
from ...shared.validators import validate_email, validate_phone


class FieldIn(BaseModel):
    """A field as configured by the owner"""

    name: str
    players: Optional[int] = None
    deposit_amount: Optional[Decimal] = None

    @field_validator("deposit_amount")
    @classmethod
    def validate_deposit(cls, v):
        if v is not None and v < 0:
            raise ValueError("Deposit amount cannot be negative")
        return v


class ScheduleIn(BaseModel):
    """Operating hours for one weekday (0=Monday .. 6=Sunday)"""

    day_of_week: int
    opens_at: str
    closes_at: str

    @field_validator("day_of_week")
    @classmethod
    def validate_day(cls, v):
        if v < 0 or v > 6:
            raise ValueError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
        return v

    @field_validator("opens_at", "closes_at")
    @classmethod
    def validate_hhmm(cls, v):
        try:
            return format_time(v)
        except Exception as e:
            raise ValueError("Times must be HH:MM") from e


class ComplexUpsert(BaseModel):
    """Create or update a complex with its fields and weekly hours"""

    name: str
    city: Optional[str] = None
    timezone: Optional[str] = None
    owner_key: Optional[str] = None
    owner_phone: Optional[str] = None
    owner_email: Optional[str] = None
    notify_whatsapp: Optional[bool] = None
    notify_email: Optional[bool] = None
    fields: Optional[list[FieldIn]] = None
    schedules: Optional[list[ScheduleIn]] = None

    @field_validator("owner_phone")
    @classmethod
    def validate_owner_phone(cls, v):
        return validate_phone(v)

    @field_validator("owner_email")
    @classmethod
    def validate_owner_email(cls, v):
        return validate_email(v)


class FieldResponse(BaseModel):
    id: int
    name: str
    slug: str
    players: Optional[int] = None
    deposit_amount: Optional[Decimal] = None

    class Config:
        from_attributes = True


class ComplexResponse(BaseModel):
    id: str
    name: str
    city: Optional[str] = None
    timezone: Optional[str] = None
    fields: list[FieldResponse] = []
    schedules: list[ScheduleIn] = []


class OwnerReservationCreate(BaseModel):
    """Manual booking or block entered by the owner"""

    field: str
    date: dt.date
    time: str
    status: Literal["manual", "blocked"] = "manual"
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None

    @field_validator("customer_phone")
    @classmethod
    def validate_customer_phone(cls, v):
        return validate_phone(v)


class MercadoPagoCredentialsIn(BaseModel):
    """Legacy manual credentials pasted by the owner"""

    access_token: str
    public_key: Optional[str] = None
    user_id: Optional[str] = None


class MercadoPagoOAuthIn(BaseModel):
    """Tokens handed over once the OAuth authorization flow completes"""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    user_id: Optional[str] = None
    scope: Optional[str] = None
    live_mode: bool = False
