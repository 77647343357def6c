from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from .shared.clock import utcnow

# Reservation statuses
STATUS_HOLD = "hold"
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_CANCELLED = "cancelled"
STATUS_BLOCKED = "blocked"
STATUS_MANUAL = "manual"

# Statuses that occupy a slot; at most one such row per slot
LIVE_STATUSES = (STATUS_HOLD, STATUS_PENDING, STATUS_APPROVED, STATUS_MANUAL, STATUS_BLOCKED)
OWNER_STATUSES = (STATUS_MANUAL, STATUS_BLOCKED)

_LIVE_STATUS_SQL = "status IN ('hold', 'pending', 'approved', 'manual', 'blocked')"

# Booking event types (outbox)
EVENT_BOOKING_APPROVED = "booking.approved"
EVENT_PAYMENT_ORPHANED = "payment.orphaned"


class Complex(Base):
    __tablename__ = "complexes"

    id = Column(String(100), primary_key=True, index=True)  # slug chosen by the owner
    name = Column(String(255), nullable=False)
    city = Column(String(255), nullable=True)
    timezone = Column(String(64), nullable=True)  # falls back to BOOKING_TIMEZONE
    owner_key = Column(String(255), nullable=True)  # shared secret for owner endpoints
    owner_phone = Column(String(50), nullable=True)
    owner_email = Column(String(255), nullable=True)
    notify_whatsapp = Column(Boolean, default=False, nullable=False)
    notify_email = Column(Boolean, default=False, nullable=False)
    # Legacy manual Mercado Pago credentials (pre-OAuth onboarding)
    mp_user_id = Column(String(100), nullable=True)
    mp_public_key = Column(String(255), nullable=True)
    mp_access_token = Column(Text, nullable=True)  # Encrypted
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    fields = relationship("Field", back_populates="complex", cascade="all, delete-orphan")
    schedules = relationship("FieldSchedule", back_populates="complex", cascade="all, delete-orphan")


class Field(Base):
    __tablename__ = "fields"

    id = Column(Integer, primary_key=True, index=True)
    complex_id = Column(String(100), ForeignKey("complexes.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)  # normalized name, part of the slot key
    players = Column(Integer, nullable=True)
    deposit_amount = Column(Numeric(12, 2), nullable=True)  # fixed deposit per slot

    complex = relationship("Complex", back_populates="fields")

    __table_args__ = (UniqueConstraint("complex_id", "slug", name="uq_fields_complex_slug"),)


class FieldSchedule(Base):
    """Operating hours per complex and weekday (0=Monday .. 6=Sunday)"""

    __tablename__ = "field_schedules"

    id = Column(Integer, primary_key=True, index=True)
    complex_id = Column(String(100), ForeignKey("complexes.id", ondelete="CASCADE"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    opens_at = Column(Time, nullable=False)
    closes_at = Column(Time, nullable=False)  # may be < opens_at for overnight hours

    complex = relationship("Complex", back_populates="schedules")

    __table_args__ = (UniqueConstraint("complex_id", "day_of_week", name="uq_field_schedules_day"),)


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    slot_key = Column(String(400), nullable=False, index=True)
    complex_id = Column(String(100), ForeignKey("complexes.id", ondelete="CASCADE"), nullable=False, index=True)
    field_id = Column(Integer, ForeignKey("fields.id", ondelete="CASCADE"), nullable=False)
    slot_date = Column(Date, nullable=False)
    slot_time = Column(Time, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    hold_deadline = Column(DateTime, nullable=True)  # only while status == hold
    intent_expires_at = Column(DateTime, nullable=True)  # pending without a payment yet
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    deposit_amount = Column(Numeric(12, 2), nullable=True)
    external_intent_id = Column(String(255), nullable=True, index=True)
    external_payment_id = Column(String(255), nullable=True, index=True)
    approved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    field = relationship("Field")

    __table_args__ = (
        # The linchpin: one live reservation per slot
        Index(
            "uq_reservations_live_slot",
            "complex_id",
            "field_id",
            "slot_date",
            "slot_time",
            unique=True,
            postgresql_where=text(_LIVE_STATUS_SQL),
            sqlite_where=text(_LIVE_STATUS_SQL),
        ),
        # Ids travel in processor metadata; never reuse one
        {"sqlite_autoincrement": True},
    )


class PaymentIntentRef(Base):
    """Maps a processor intent (preference) id back to the slot it was opened for"""

    __tablename__ = "payment_intent_refs"

    external_intent_id = Column(String(255), primary_key=True)
    slot_key = Column(String(400), nullable=False)
    complex_id = Column(String(100), nullable=False, index=True)
    reservation_id = Column(Integer, nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    deposit_amount = Column(Numeric(12, 2), nullable=True)
    last_payment_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)


class BookingEvent(Base):
    """Outbox of downstream triggers; one event per (type, payment)"""

    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=False)
    slot_key = Column(String(400), nullable=False)
    complex_id = Column(String(100), nullable=False, index=True)
    reservation_id = Column(Integer, nullable=True)
    external_payment_id = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    dispatched_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_type", "external_payment_id", name="uq_booking_events_type_payment"),
    )
