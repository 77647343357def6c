import os
from datetime import datetime, time, timedelta
from decimal import Decimal

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from app import models, models_mercadopago  # noqa: F401
from app.cache import Cache
from app.database import Base, build_engine
from app.domain.complexes.directory import FieldDirectory
from app.domain.reservations.service import HoldService
from app.models import Complex, Field, FieldSchedule

# Monday 2025-03-10 12:00 in Buenos Aires (UTC-3)
START = datetime(2025, 3, 10, 15, 0)
COMPLEX_ID = "x"
OWNER_KEY = "owner-secret"


class FrozenClock:
    """Callable clock the tests move forward by hand"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, event_ids):
        self.calls.append(list(event_ids))

    @property
    def event_ids(self):
        return [event_id for call in self.calls for event_id in call]


def _sqlite_engine(path, immediate=False):
    engine = build_engine(f"sqlite:///{path}")
    if immediate:
        # Every transaction takes the write lock at BEGIN, so concurrent writers queue up
        @event.listens_for(engine, "connect")
        def _connect(dbapi_conn, _record):
            dbapi_conn.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def engine(tmp_path):
    engine = _sqlite_engine(tmp_path / "booking.db")
    yield engine
    engine.dispose()


@pytest.fixture
def immediate_session_factory(tmp_path):
    engine = _sqlite_engine(tmp_path / "concurrent.db", immediate=True)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock()


class DummyRedis:
    """Redis commands the cache uses, backed by a dict"""

    def __init__(self):
        self.store = {}
        self.ttl = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttl[key] = ttl

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self.store.pop(key, None) is not None
            self.ttl.pop(key, None)
        return removed


@pytest.fixture
def redis_stub():
    return DummyRedis()


@pytest.fixture
def directory(redis_stub):
    return FieldDirectory(cache=Cache(client=redis_stub), ttl_seconds=60)


@pytest.fixture
def notifier():
    return RecordingNotifier()


def seed_complex(db, complex_id=COMPLEX_ID, opens_at=time(9, 0), closes_at=time(23, 0), days=range(7)):
    complex_row = Complex(
        id=complex_id,
        name="Complejo X",
        timezone="America/Argentina/Buenos_Aires",
        owner_key=OWNER_KEY,
    )
    db.add(complex_row)
    db.add_all(
        [
            Field(complex_id=complex_id, name="Cancha 1", slug="cancha1", players=5, deposit_amount=Decimal("5000")),
            Field(complex_id=complex_id, name="Cancha 2", slug="cancha2", players=7),
        ]
    )
    db.add_all(
        [
            FieldSchedule(complex_id=complex_id, day_of_week=day, opens_at=opens_at, closes_at=closes_at)
            for day in days
        ]
    )
    db.commit()
    return complex_row


@pytest.fixture
def complex_row(db):
    return seed_complex(db)


@pytest.fixture
def hold_service(db, directory, clock, complex_row):
    return HoldService(db, directory=directory, clock=clock, hold_ttl_minutes=10)


@pytest.fixture
def make_complex(db):
    def _make(session=None, **kwargs):
        return seed_complex(session if session is not None else db, **kwargs)

    return _make
