"""Complex service - Owner-side configuration of complexes, fields and hours"""

import hmac
import logging
from datetime import date, datetime
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import Complex, Reservation
from ...shared.clock import utcnow
from ...shared.slots import build_slot_key, parse_slot_key, parse_time, slugify_field_name
from ...shared.validators import validate_complex_id
from ..payments.credentials import CredentialStore
from ..reservations.repository import ReservationRepository
from .directory import FieldDirectory, field_directory
from .repository import ComplexRepository
from .schemas import ComplexUpsert, MercadoPagoCredentialsIn, MercadoPagoOAuthIn

logger = logging.getLogger(__name__)


class ComplexService:
    """Service layer for owner operations"""

    def __init__(self, db: Session, directory: FieldDirectory = field_directory):
        self.db = db
        self.directory = directory
        self.repo = ComplexRepository()

    def get_complex(self, complex_id: str) -> Complex:
        complex_row = self.repo.get_complex(self.db, complex_id)
        if not complex_row:
            raise HTTPException(status_code=404, detail="Complex not found")
        return complex_row

    def verify_owner(self, complex_id: str, owner_key: Optional[str]) -> Complex:
        """Check the X-Owner-Key header against the complex's stored key"""
        complex_row = self.get_complex(complex_id)
        if not owner_key or not complex_row.owner_key:
            raise HTTPException(status_code=401, detail="Owner key required")
        if not hmac.compare_digest(owner_key.encode(), complex_row.owner_key.encode()):
            logger.warning(f"⚠️ Invalid owner key for complex {complex_id}")
            raise HTTPException(status_code=403, detail="Invalid owner key")
        return complex_row

    def upsert_complex(self, complex_id: str, data: ComplexUpsert, owner_key: Optional[str]) -> Complex:
        """
        Create or update a complex.

        Creating requires an owner_key in the body, and the header must carry
        the same key. Updating requires the stored key. Fields are matched by
        slug; fields missing from the list are removed unless they still hold
        live reservations. A schedules list replaces the weekly hours.
        """
        try:
            complex_id = validate_complex_id(complex_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        complex_row = self.repo.get_complex(self.db, complex_id)
        if complex_row:
            self.verify_owner(complex_id, owner_key)
        else:
            if not data.owner_key:
                raise HTTPException(status_code=400, detail="owner_key is required to create a complex")
            if not owner_key or not hmac.compare_digest(owner_key.encode(), data.owner_key.encode()):
                raise HTTPException(status_code=401, detail="X-Owner-Key must match the new owner_key")
            logger.info(f"🏟️ Creating complex {complex_id}")
            complex_row = self.repo.create_complex(self.db, complex_id, data.name)

        self.repo.update_complex(
            self.db,
            complex_row,
            name=data.name,
            city=data.city,
            timezone=data.timezone,
            owner_key=data.owner_key,
            owner_phone=data.owner_phone,
            owner_email=data.owner_email,
            notify_whatsapp=data.notify_whatsapp,
            notify_email=data.notify_email,
        )

        if data.fields is not None:
            self._sync_fields(complex_id, data)

        if data.schedules is not None:
            self.repo.replace_schedules(
                self.db,
                complex_id,
                [(s.day_of_week, s.opens_at, s.closes_at) for s in data.schedules],
            )

        self.db.commit()
        self.db.refresh(complex_row)
        self.directory.invalidate(complex_id)
        logger.info(f"✅ Complex {complex_id} saved")
        return complex_row

    def _sync_fields(self, complex_id: str, data: ComplexUpsert) -> None:
        kept_ids = set()
        for field_in in data.fields:
            if not slugify_field_name(field_in.name):
                raise HTTPException(status_code=400, detail=f"Field name '{field_in.name}' has no letters or digits")
            field = self.repo.upsert_field(
                self.db,
                complex_id,
                field_in.name.strip(),
                players=field_in.players,
                deposit_amount=field_in.deposit_amount,
            )
            kept_ids.add(field.id)

        for field in self.repo.get_fields(self.db, complex_id):
            if field.id in kept_ids:
                continue
            if self.repo.field_has_live_reservations(self.db, field.id):
                self.db.rollback()
                raise HTTPException(
                    status_code=409,
                    detail=f"Field '{field.name}' has live reservations and cannot be removed",
                )
            logger.info(f"🗑️ Removing field {field.slug} from complex {complex_id}")
            self.repo.delete_field(self.db, field)

    def create_owner_reservation(
        self,
        complex_row: Complex,
        field_name: str,
        slot_date: date,
        slot_time: str,
        status: str,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """Manual booking or block; raises SlotTaken when the slot is occupied"""
        _, field = self.directory.resolve_field(self.db, complex_row.id, field_name)
        parsed_time = parse_time(slot_time)
        slot_key = build_slot_key(complex_row.id, field.name, slot_date, parsed_time)
        reservation = ReservationRepository.create_owner_reservation(
            self.db,
            status=status,
            slot_key=slot_key,
            complex_id=complex_row.id,
            field_id=field.id,
            slot_date=slot_date,
            slot_time=parsed_time,
            now=now or utcnow(),
            customer_name=customer_name,
            customer_phone=customer_phone,
        )
        logger.info(f"📌 Owner {status} reservation {slot_key}")
        return reservation

    def delete_owner_reservation(self, complex_row: Complex, slot_key: str) -> None:
        """Free a slot regardless of its status (owner cancellation)"""
        parsed = parse_slot_key(slot_key)
        if parsed.complex_id != complex_row.id:
            raise HTTPException(status_code=404, detail="Reservation not found")
        deleted = ReservationRepository.delete_owner_reservation(self.db, complex_row.id, slot_key)
        if not deleted:
            raise HTTPException(status_code=404, detail="Reservation not found")
        logger.info(f"🗑️ Owner released {slot_key}")

    def set_manual_credentials(self, complex_row: Complex, data: MercadoPagoCredentialsIn) -> Complex:
        return CredentialStore.save_legacy_credentials(
            self.db,
            complex_row,
            access_token=data.access_token,
            public_key=data.public_key,
            mp_user_id=data.user_id,
        )

    def set_oauth_tokens(self, complex_row: Complex, data: MercadoPagoOAuthIn) -> None:
        CredentialStore.save_oauth_tokens(
            self.db,
            complex_row.id,
            access_token=data.access_token,
            refresh_token=data.refresh_token,
            expires_in=data.expires_in,
            mp_user_id=data.user_id,
            scope=data.scope,
            live_mode=data.live_mode,
        )
