"""
Create the booking tables

Tables:
- complexes, fields, field_schedules
- reservations (+ partial unique index uq_reservations_live_slot)
- payment_intent_refs
- booking_events
- mercadopago_integrations

Safe to run more than once.
"""

# Ensure this script can be run directly from repo root
import sys
from pathlib import Path

CURRENT_DIR = Path(__file__).resolve().parent
BACKEND_DIR = CURRENT_DIR.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import text

from app import models, models_mercadopago  # noqa: F401
from app.database import Base, engine

TABLES = [
    "complexes",
    "fields",
    "field_schedules",
    "reservations",
    "payment_intent_refs",
    "booking_events",
    "mercadopago_integrations",
]


def upgrade():
    Base.metadata.create_all(
        bind=engine, tables=[Base.metadata.tables[name] for name in TABLES], checkfirst=True
    )
    with engine.connect() as conn:
        # Older databases created before the pending-intent expiry existed
        if engine.dialect.name == "postgresql":
            conn.execute(
                text(
                    """
                    ALTER TABLE reservations
                    ADD COLUMN IF NOT EXISTS intent_expires_at TIMESTAMP;
                    """
                )
            )
        # One live reservation per slot
        conn.execute(
            text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_live_slot
                ON reservations (complex_id, field_id, slot_date, slot_time)
                WHERE status IN ('hold', 'pending', 'approved', 'manual', 'blocked');
                """
            )
        )
        conn.commit()
        print("Migration create_reservation_tables applied successfully")


def downgrade():
    with engine.connect() as conn:
        for name in reversed(TABLES):
            conn.execute(text(f"DROP TABLE IF EXISTS {name}"))
        conn.commit()
        print("Migration create_reservation_tables rolled back")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage booking tables migration")
    parser.add_argument("--down", action="store_true", help="Rollback the migration")
    args = parser.parse_args()

    if args.down:
        downgrade()
    else:
        upgrade()
