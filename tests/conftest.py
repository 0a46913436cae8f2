import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from zapshift.auth import verify_token
from zapshift.main import app as fastapi_app


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_zapshift.db"


@pytest.fixture(autouse=True)
def env(monkeypatch, db_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_fake")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("SITE_DOMAIN", "http://shop.test")


@pytest.fixture
def identity():
    return {"email": "a@x.com"}


@pytest.fixture
def client(identity):
    # Bypass token verification; tests switch users through the identity dict
    fastapi_app.dependency_overrides[verify_token] = lambda: identity["email"]
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def raw_client():
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def TestingSessionLocal(client, db_path):
    # Same SQLite file the app writes to, opened with the sync driver for assertions
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def checkout_session():
    """Build the dict Stripe returns for a checkout session."""

    def build(parcel_id, **overrides):
        session = {
            "id": "sess_1",
            "payment_status": "paid",
            "payment_intent": "pi_1",
            "amount_total": 1500,
            "currency": "usd",
            "customer_email": "a@x.com",
            "metadata": {"parcelId": parcel_id, "parcelName": "Books"},
        }
        session.update(overrides)
        return session

    return build


@pytest.fixture
def parcel_payload():
    return {
        "parcel_name": "Books",
        "parcel_type": "non-document",
        "weight": 2.5,
        "sender_name": "Alice",
        "sender_email": "a@x.com",
        "receiver_name": "Bob",
        "receiver_address": "12 Harbour Road, Chattogram",
        "cost": 15,
    }


@pytest.fixture
def create_parcel(client, parcel_payload):
    def create(**overrides):
        response = client.post("/parcels", json={**parcel_payload, **overrides})
        assert response.status_code == 201, response.text
        return response.json()

    return create
