import pytest
from fastapi.testclient import TestClient
from httpx import MockTransport, Response

from app.database import get_db
from app.domain.complexes import router as complexes_router
from app.domain.complexes.service import ComplexService
from app.domain.payments import router as payments_router
from app.domain.payments.credentials import CredentialStore
from app.domain.payments.intent_bridge import PaymentIntentBridge
from app.domain.payments.mercadopago_service import MercadoPagoClient
from app.domain.payments.reconciliation import ReconciliationEngine
from app.domain.reservations import router as reservations_router
from app.domain.reservations.service import HoldService
from app.main import app
from app.webhook_security import create_mercadopago_signature

WEBHOOK_SECRET = "webhook-secret"
SLOT_KEY = "x-cancha1-2025-03-10-19:00"
CHECKOUT = {
    "complex_id": "x",
    "field": "Cancha 1",
    "date": "2025-03-10",
    "time": "19:00",
    "customer_name": "Ana",
    "customer_phone": "+54 11 5555-0000",
}


class ProcessorStub:
    """Mercado Pago stand-in: creates preferences and serves payments"""

    def __init__(self):
        self.available = True
        self.payments = {}
        self.requests = []

    def handler(self, request):
        self.requests.append((request.method, request.url.path))
        if not self.available:
            return Response(503, text="Service Unavailable")
        if request.url.path == "/checkout/preferences":
            return Response(201, json={"id": "pref-1", "init_point": "https://mp.test/checkout/pref-1"})
        payment_id = request.url.path.rsplit("/", 1)[-1]
        if payment_id in self.payments:
            return Response(200, json=self.payments[payment_id])
        return Response(404, json={"message": "not found"})


@pytest.fixture
def processor():
    return ProcessorStub()


@pytest.fixture
def client(session_factory, directory, clock, notifier, processor, complex_row):
    mp_client = MercadoPagoClient(base_url="https://api.mercadopago.test", transport=MockTransport(processor.handler))
    credentials = CredentialStore(session_factory=session_factory, sources=["env"], env_token="env-token")
    bridge = PaymentIntentBridge(
        client=mp_client, credentials=credentials, session_factory=session_factory, clock=clock
    )
    engine = ReconciliationEngine(
        client=mp_client,
        credentials=credentials,
        session_factory=session_factory,
        notifier=notifier,
        clock=clock,
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def override_hold_service():
        db = session_factory()
        try:
            yield HoldService(db, directory=directory, clock=clock)
        finally:
            db.close()

    def override_complex_service():
        db = session_factory()
        try:
            yield ComplexService(db, directory=directory)
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[reservations_router.get_hold_service] = override_hold_service
    app.dependency_overrides[complexes_router.get_hold_service] = override_hold_service
    app.dependency_overrides[complexes_router.get_complex_service] = override_complex_service
    app.dependency_overrides[reservations_router.get_intent_bridge] = lambda: bridge
    app.dependency_overrides[payments_router.get_reconciliation_engine] = lambda: engine
    app.dependency_overrides[payments_router.get_webhook_secret] = lambda: WEBHOOK_SECRET

    # No context manager: the lifespan (table creation on the default engine, sweeper) stays off
    yield TestClient(app)

    app.dependency_overrides.clear()


def _signed_headers(data_id, request_id="req-1", ts="1741630000"):
    return {
        "x-signature": create_mercadopago_signature(WEBHOOK_SECRET, data_id, request_id, ts),
        "x-request-id": request_id,
    }


# ============================================================================
# Health
# ============================================================================


def test_root_and_health(client):
    assert client.get("/").status_code == 200

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


# ============================================================================
# Checkout, availability and status
# ============================================================================


def test_checkout_returns_redirect_and_marks_slot_pending(client):
    response = client.post("/reservations/checkout", json=CHECKOUT)

    assert response.status_code == 200
    body = response.json()
    assert body["intent_id"] == "pref-1"
    assert body["redirect_url"] == "https://mp.test/checkout/pref-1"
    assert body["slot_key"] == SLOT_KEY

    status = client.get(f"/reservations/{SLOT_KEY}").json()
    assert status["status"] == "pending"
    assert status["customer_phone"] == "+541155550000"

    availability = client.get(
        "/reservations/availability",
        params={"complex_id": "x", "field": "cancha 1", "date": "2025-03-10", "time": "19:00"},
    ).json()
    assert availability == {"slot_key": SLOT_KEY, "free": False}


def test_second_checkout_is_slot_taken(client):
    client.post("/reservations/checkout", json=CHECKOUT)

    response = client.post("/reservations/checkout", json={**CHECKOUT, "customer_name": "Beto"})

    assert response.status_code == 409
    assert response.json() == {
        "error": "slot_taken",
        "detail": "Someone else just took this slot",
        "status": "pending",
        "temporary": False,
    }


@pytest.mark.parametrize(
    "changes, status_code, error",
    [
        ({"time": "23:30"}, 422, "out_of_hours"),
        ({"time": "10:00"}, 422, "in_the_past"),
        ({"field": "Cancha 9"}, 404, "unknown_field"),
        ({"complex_id": "nowhere"}, 404, "unknown_field"),
    ],
)
def test_checkout_validation_errors(client, processor, changes, status_code, error):
    response = client.post("/reservations/checkout", json={**CHECKOUT, **changes})

    assert response.status_code == status_code
    assert response.json()["error"] == error
    assert processor.requests == []


def test_checkout_requires_customer_phone(client):
    response = client.post("/reservations/checkout", json={**CHECKOUT, "customer_phone": ""})

    assert response.status_code == 422


def test_processor_outage_is_503_and_frees_the_slot(client, processor):
    processor.available = False

    response = client.post("/reservations/checkout", json=CHECKOUT)

    assert response.status_code == 503
    assert response.json()["error"] == "processor_unavailable"
    assert client.get(f"/reservations/{SLOT_KEY}").json()["status"] == "none"


def test_status_of_free_slot_and_malformed_key(client):
    assert client.get(f"/reservations/{SLOT_KEY}").json() == {
        "slot_key": SLOT_KEY,
        "status": "none",
        "customer_name": None,
        "customer_phone": None,
        "deposit_amount": None,
        "hold_deadline": None,
        "approved_at": None,
    }

    response = client.get("/reservations/not-a-key")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_slot_key"


# ============================================================================
# Mercado Pago webhook
# ============================================================================


def test_signed_notification_approves_the_booking(client, processor, notifier):
    client.post("/reservations/checkout", json=CHECKOUT)
    processor.payments["9001"] = {
        "id": 9001,
        "status": "approved",
        "preference_id": "pref-1",
        "external_reference": SLOT_KEY,
        "metadata": {"slot_key": SLOT_KEY, "complex_id": "x"},
    }

    payload = {"type": "payment", "action": "payment.updated", "data": {"id": "9001"}}
    for _ in range(2):
        response = client.post("/webhooks/mercadopago", json=payload, headers=_signed_headers("9001"))
        assert response.status_code == 200
        assert response.json() == {"status": "received"}

    assert client.get(f"/reservations/{SLOT_KEY}").json()["status"] == "approved"
    assert len(notifier.event_ids) == 1


def test_bad_signature_is_acknowledged_but_ignored(client, processor):
    response = client.post(
        "/webhooks/mercadopago",
        json={"type": "payment", "data": {"id": "9001"}},
        headers={"x-signature": "ts=1,v1=deadbeef", "x-request-id": "req-1"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "received"}
    assert processor.requests == []


def test_garbage_notification_is_acknowledged(client, processor):
    response = client.post(
        "/webhooks/mercadopago",
        content=b"not json",
        headers={"Content-Type": "application/json", **_signed_headers(None)},
    )

    assert response.status_code == 200
    assert processor.requests == []


# ============================================================================
# Owner endpoints
# ============================================================================


def test_owner_creates_and_updates_a_complex(client):
    body = {
        "name": "Nuevo",
        "owner_key": "k1",
        "fields": [{"name": "Cancha 1", "players": 5, "deposit_amount": "2000"}],
        "schedules": [{"day_of_week": 0, "opens_at": "9:00", "closes_at": "02:00"}],
    }

    missing_key = client.put("/owner/complexes/nuevo", json=body)
    assert missing_key.status_code == 401

    created = client.put("/owner/complexes/nuevo", json=body, headers={"X-Owner-Key": "k1"})
    assert created.status_code == 200
    assert [f["slug"] for f in created.json()["fields"]] == ["cancha1"]
    assert created.json()["schedules"] == [{"day_of_week": 0, "opens_at": "09:00", "closes_at": "02:00"}]

    forbidden = client.put("/owner/complexes/nuevo", json=body, headers={"X-Owner-Key": "wrong"})
    assert forbidden.status_code == 403

    renamed = client.put(
        "/owner/complexes/nuevo",
        json={"name": "Nuevo", "fields": [{"name": "Cancha Techada"}]},
        headers={"X-Owner-Key": "k1"},
    )
    assert [f["slug"] for f in renamed.json()["fields"]] == ["canchatechada"]
    assert client.get("/complexes/nuevo").json()["name"] == "Nuevo"


def test_owner_block_prevents_checkout_until_removed(client):
    headers = {"X-Owner-Key": "owner-secret"}
    blocked = client.post(
        "/owner/complexes/x/reservations",
        json={"field": "Cancha 1", "date": "2025-03-10", "time": "19:00", "status": "blocked"},
        headers=headers,
    )
    assert blocked.status_code == 201
    assert blocked.json()["blocked"] is True

    taken = client.post("/reservations/checkout", json=CHECKOUT)
    assert taken.status_code == 409
    assert taken.json()["status"] == "blocked"

    listing = client.get("/complexes/x/reservations").json()
    assert list(listing) == [SLOT_KEY]

    assert client.delete(f"/owner/complexes/x/reservations/{SLOT_KEY}", headers=headers).status_code == 200
    assert client.delete(f"/owner/complexes/x/reservations/{SLOT_KEY}", headers=headers).status_code == 404
    assert client.post("/reservations/checkout", json=CHECKOUT).status_code == 200


def test_owner_cannot_remove_a_field_with_live_reservations(client):
    client.post("/reservations/checkout", json=CHECKOUT)

    response = client.put(
        "/owner/complexes/x",
        json={"name": "Complejo X", "fields": [{"name": "Cancha 2"}]},
        headers={"X-Owner-Key": "owner-secret"},
    )

    assert response.status_code == 409


def test_owner_stores_mercadopago_credentials(client, session_factory):
    response = client.put(
        "/owner/complexes/x/mercadopago",
        json={"access_token": "APP_USR-legacy"},
        headers={"X-Owner-Key": "owner-secret"},
    )
    assert response.status_code == 200

    credentials = CredentialStore(session_factory=session_factory, sources=["legacy"], env_token=None)
    assert credentials.for_complex("x").access_token == "APP_USR-legacy"
