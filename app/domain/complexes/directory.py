"""
Field directory - cached view of a complex's fields and operating hours.

The hold path needs fields and schedules on every request. They change rarely
(owner edits), so each complex's configuration is kept in Redis under
``complex:{id}:directory`` for a few seconds and reloaded on read when missing
or when a lookup misses. Owner writes call ``invalidate``, which deletes the key
for every API worker. The cache only answers "does this field exist / is the
complex open"; whether a slot is taken is always decided by the database.
"""

import logging
from dataclasses import dataclass, field
from datetime import time as dtime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...cache import Cache, cache
from ...config import BOOKING_TIMEZONE, FIELD_CACHE_TTL_SECONDS
from ...errors import UnknownField
from ...models import Complex, Field, FieldSchedule
from ...shared.slots import slugify_field_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldInfo:
    id: int
    name: str
    slug: str
    players: Optional[int]
    deposit_amount: Optional[Decimal]


@dataclass
class ComplexSnapshot:
    id: str
    timezone: str
    fields: list[FieldInfo] = field(default_factory=list)
    # day_of_week (0=Monday) -> (opens_at, closes_at)
    hours: dict[int, tuple[dtime, dtime]] = field(default_factory=dict)

    def match_field(self, name: str) -> Optional[FieldInfo]:
        """Match by slug; a bare number matches the field with that many players"""
        slug = slugify_field_name(name)
        if not slug:
            return None
        for f in self.fields:
            if f.slug == slug:
                return f
        raw = str(name).strip()
        if raw.isdigit():
            for f in self.fields:
                if f.players == int(raw):
                    return f
        return None



    def to_cache(self) -> dict:
        return {
            "id": self.id,
            "timezone": self.timezone,
            "fields": [
                {
                    "id": f.id,
                    "name": f.name,
                    "slug": f.slug,
                    "players": f.players,
                    "deposit_amount": str(f.deposit_amount) if f.deposit_amount is not None else None,
                }
                for f in self.fields
            ],
            "hours": {
                str(day): [opens_at.isoformat(), closes_at.isoformat()]
                for day, (opens_at, closes_at) in self.hours.items()
            },
        }

    @classmethod
    def from_cache(cls, data: dict) -> "ComplexSnapshot":
        return cls(
            id=data["id"],
            timezone=data["timezone"],
            fields=[
                FieldInfo(
                    id=f["id"],
                    name=f["name"],
                    slug=f["slug"],
                    players=f["players"],
                    deposit_amount=Decimal(f["deposit_amount"]) if f["deposit_amount"] is not None else None,
                )
                for f in data["fields"]
            ],
            hours={
                int(day): (dtime.fromisoformat(opens_at), dtime.fromisoformat(closes_at))
                for day, (opens_at, closes_at) in data["hours"].items()
            },
        )


class FieldDirectory:
    """Refresh-on-read Redis cache of complex configuration"""

    def __init__(self, cache: Cache = cache, ttl_seconds: int = FIELD_CACHE_TTL_SECONDS):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(complex_id: str) -> str:
        return f"complex:{complex_id}:directory"

    def _load(self, db: Session, complex_id: str) -> Optional[ComplexSnapshot]:
        complex_row = db.query(Complex).filter(Complex.id == complex_id).first()
        if not complex_row:
            return None

        fields = db.query(Field).filter(Field.complex_id == complex_id).order_by(Field.id).all()
        schedules = db.query(FieldSchedule).filter(FieldSchedule.complex_id == complex_id).all()

        snapshot = ComplexSnapshot(
            id=complex_row.id,
            timezone=complex_row.timezone or BOOKING_TIMEZONE,
            fields=[
                FieldInfo(
                    id=f.id,
                    name=f.name,
                    slug=f.slug,
                    players=f.players,
                    deposit_amount=f.deposit_amount,
                )
                for f in fields
            ],
            hours={s.day_of_week: (s.opens_at, s.closes_at) for s in schedules},
        )
        self.cache.set(self.cache_key(complex_id), snapshot.to_cache(), self.ttl_seconds)
        logger.debug(f"Field cache loaded for complex {complex_id}: {len(snapshot.fields)} fields")
        return snapshot

    def get_complex(self, db: Session, complex_id: str, refresh: bool = False) -> Optional[ComplexSnapshot]:
        if not refresh:
            cached = self.cache.get(self.cache_key(complex_id))
            if cached is not None:
                try:
                    return ComplexSnapshot.from_cache(cached)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"⚠️ Unreadable field cache entry for complex {complex_id}: {e}")
        return self._load(db, complex_id)

    def resolve_field(self, db: Session, complex_id: str, field_name: str) -> tuple[ComplexSnapshot, FieldInfo]:
        """Find the field a free-text name refers to, or raise UnknownField"""
        snapshot = self.get_complex(db, complex_id)
        found = snapshot.match_field(field_name) if snapshot else None
        if snapshot and not found:
            # Cached copy may predate an owner edit
            snapshot = self.get_complex(db, complex_id, refresh=True)
            found = snapshot.match_field(field_name) if snapshot else None

        if not snapshot:
            raise UnknownField(f"Unknown complex: {complex_id}")
        if not found:
            raise UnknownField(f"Field '{field_name}' not found at complex {complex_id}")
        return snapshot, found

    def invalidate(self, complex_id: str) -> None:
        self.cache.delete(self.cache_key(complex_id))
        logger.debug(f"Field cache invalidated: {complex_id}")


# Global directory instance
field_directory = FieldDirectory()
