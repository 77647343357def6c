"""Complex repository - Database operations for complexes, fields and hours"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import LIVE_STATUSES, Complex, Field, FieldSchedule, Reservation
from ...shared.slots import parse_time, slugify_field_name


class ComplexRepository:
    """Repository for complex configuration"""

    @staticmethod
    def get_complex(db: Session, complex_id: str) -> Optional[Complex]:
        return db.query(Complex).filter(Complex.id == complex_id).first()

    @staticmethod
    def create_complex(db: Session, complex_id: str, name: str) -> Complex:
        complex_row = Complex(id=complex_id, name=name)
        db.add(complex_row)
        db.flush()
        return complex_row

    @staticmethod
    def update_complex(db: Session, complex_row: Complex, **updates) -> Complex:
        """Apply non-None updates (owner edits are partial)"""
        for key, value in updates.items():
            if value is not None and hasattr(complex_row, key):
                setattr(complex_row, key, value)
        db.flush()
        return complex_row

    @staticmethod
    def get_fields(db: Session, complex_id: str) -> list[Field]:
        return db.query(Field).filter(Field.complex_id == complex_id).order_by(Field.id).all()

    @staticmethod
    def get_schedules(db: Session, complex_id: str) -> list[FieldSchedule]:
        return (
            db.query(FieldSchedule)
            .filter(FieldSchedule.complex_id == complex_id)
            .order_by(FieldSchedule.day_of_week)
            .all()
        )

    @staticmethod
    def upsert_field(db: Session, complex_id: str, name: str, players=None, deposit_amount=None) -> Field:
        """Fields are identified by their slug; renaming to the same slug updates in place"""
        slug = slugify_field_name(name)
        field = db.query(Field).filter(Field.complex_id == complex_id, Field.slug == slug).first()
        if not field:
            field = Field(complex_id=complex_id, slug=slug, name=name)
            db.add(field)
        field.name = name
        field.players = players
        field.deposit_amount = deposit_amount
        db.flush()
        return field

    @staticmethod
    def field_has_live_reservations(db: Session, field_id: int) -> bool:
        return (
            db.query(Reservation.id)
            .filter(Reservation.field_id == field_id, Reservation.status.in_(LIVE_STATUSES))
            .first()
            is not None
        )

    @staticmethod
    def delete_field(db: Session, field: Field) -> None:
        db.delete(field)
        db.flush()

    @staticmethod
    def replace_schedules(db: Session, complex_id: str, schedules: list[tuple[int, str, str]]) -> None:
        """Replace the weekly hours; days not listed are closed"""
        db.query(FieldSchedule).filter(FieldSchedule.complex_id == complex_id).delete(
            synchronize_session=False
        )
        for day_of_week, opens_at, closes_at in schedules:
            db.add(
                FieldSchedule(
                    complex_id=complex_id,
                    day_of_week=day_of_week,
                    opens_at=parse_time(opens_at),
                    closes_at=parse_time(closes_at),
                )
            )
        db.flush()
