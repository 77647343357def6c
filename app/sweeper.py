"""
Expiry sweeper - deletes holds whose deadline passed.

Reads already treat expired holds as absent, so the sweeper is only
housekeeping: it keeps the table small and frees the unique index without
waiting for the next attempt on the same slot. Each pass is one conditional
DELETE, so it is safe next to concurrent approvals and against other
sweepers (the ARQ cron runs the same pass).
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import SWEEP_INTERVAL_SECONDS
from .database import SessionLocal
from .domain.reservations.repository import ReservationRepository
from .shared.clock import utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock

    def sweep_once(self) -> int:
        db = self.session_factory()
        try:
            deleted = ReservationRepository.sweep_expired(db, self.clock())
        finally:
            db.close()
        if deleted:
            logger.info(f"🧹 Sweeper released {deleted} expired hold(s)")
        return deleted

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(f"🧹 Expiry sweeper started (every {self.interval_seconds}s)")
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep_once)
            except SQLAlchemyError as e:
                # Transient database trouble; the next pass retries
                logger.error(f"❌ Expiry sweep failed: {e}")
            except Exception:
                logger.exception("❌ Unexpected error in expiry sweep")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("🧹 Expiry sweeper stopped")
