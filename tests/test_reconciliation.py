import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from zapshift.database import Database
from zapshift.errors import ExternalServiceError, MalformedSession, StoreUnavailable
from zapshift.models import Parcel, PaymentRecord
from zapshift.reconciliation import ReconciliationEngine, ReconciliationStatus, minor_to_major
from zapshift.schemas import InsertResult, PaymentSession
from zapshift.stores import ParcelStore, PaymentLedger


class FakeVerifier:
    """Serves canned checkout sessions the way the Stripe verifier would."""

    def __init__(self):
        self.sessions = {}
        self.calls = 0

    async def resolve(self, session_id):
        self.calls += 1
        await asyncio.sleep(0)
        if session_id == "sess_malformed":
            raise MalformedSession(f"Checkout session {session_id} is malformed")
        if session_id not in self.sessions:
            raise ExternalServiceError(f"Could not verify checkout session {session_id}")
        return self.sessions[session_id]


class BlindLedger(PaymentLedger):
    """Misses the first lookup, as if a concurrent attempt inserted right after it."""

    def __init__(self, sessions):
        super().__init__(sessions)
        self.blind = True

    async def find_by_transaction(self, transaction_id):
        if self.blind:
            self.blind = False
            return None
        return await super().find_by_transaction(transaction_id)


class GhostLedger(PaymentLedger):
    """Rejects every insert yet never finds the conflicting record."""

    async def find_by_transaction(self, transaction_id):
        return None

    async def insert_one(self, instance):
        return InsertResult(duplicate=True)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await db.open()
    yield db
    await db.close()


@pytest.fixture
def parcels(database):
    return ParcelStore(database.sessions)


@pytest.fixture
def ledger(database):
    return PaymentLedger(database.sessions)


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def engine(verifier, parcels, ledger):
    return ReconciliationEngine(verifier, parcels, ledger)


@pytest_asyncio.fixture
async def parcel(parcels):
    parcel = Parcel(
        id="a" * 32,
        parcel_name="Books",
        parcel_type="document",
        sender_name="Alice",
        sender_email="a@x.com",
        receiver_name="Bob",
        receiver_address="12 Harbour Road",
        cost=Decimal("15.00"),
    )
    await parcels.insert_one(parcel)
    return parcel


def paid_session(parcel_id, **overrides):
    fields = {
        "id": "sess_1",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "amount_total": 1500,
        "currency": "usd",
        "customer_email": "a@x.com",
        "parcel_id": parcel_id,
        "parcel_name": "Books",
    }
    fields.update(overrides)
    return PaymentSession(**fields)


def test_minor_to_major():
    assert minor_to_major(1500) == Decimal("15.00")
    assert minor_to_major(999) == Decimal("9.99")
    assert str(minor_to_major(1500)) == "15.00"


@pytest.mark.asyncio
async def test_paid_session_is_reconciled(engine, verifier, parcel, parcels, ledger):
    verifier.sessions["sess_1"] = paid_session(parcel.id)

    outcome = await engine.confirm("sess_1")

    assert outcome.status == ReconciliationStatus.RECONCILED
    assert outcome.transaction_id == "pi_1"
    assert outcome.parcel_update.matched_count == 1
    assert outcome.record_insert.inserted_id is not None

    stored = await parcels.find_by_id(parcel.id)
    assert stored.payment_status == "paid"
    assert stored.tracking_id == outcome.tracking_id

    record = await ledger.find_by_transaction("pi_1")
    assert record.amount == Decimal("15.00")
    assert record.parcel_id == parcel.id
    assert record.customer_email == "a@x.com"
    assert record.tracking_id == outcome.tracking_id


@pytest.mark.asyncio
async def test_second_confirmation_is_already_reconciled(engine, verifier, parcel, parcels, ledger):
    verifier.sessions["sess_1"] = paid_session(parcel.id)

    first = await engine.confirm("sess_1")
    second = await engine.confirm("sess_1")

    assert second.status == ReconciliationStatus.ALREADY_RECONCILED
    assert second.duplicate is True
    assert second.tracking_id == first.tracking_id
    assert second.transaction_id == first.transaction_id
    assert second.parcel_update is None
    assert len(await ledger.find_many()) == 1
    assert (await parcels.find_by_id(parcel.id)).tracking_id == first.tracking_id


@pytest.mark.asyncio
async def test_unpaid_session_mutates_nothing(engine, verifier, parcel, parcels, ledger):
    verifier.sessions["sess_1"] = paid_session(parcel.id, payment_status="unpaid", payment_intent=None)

    outcome = await engine.confirm("sess_1")

    assert outcome.status == ReconciliationStatus.NOT_PAID
    assert outcome.payment_status == "unpaid"
    stored = await parcels.find_by_id(parcel.id)
    assert stored.payment_status == "unpaid"
    assert stored.tracking_id is None
    assert await ledger.find_many() == []


@pytest.mark.asyncio
async def test_unverifiable_session(engine, parcel, parcels, ledger):
    outcome = await engine.confirm("sess_unknown")

    assert outcome.status == ReconciliationStatus.VERIFICATION_FAILED
    assert "sess_unknown" in outcome.detail
    assert (await parcels.find_by_id(parcel.id)).payment_status == "unpaid"
    assert await ledger.find_many() == []


@pytest.mark.asyncio
async def test_missing_parcel_still_records_payment(engine, verifier, ledger):
    verifier.sessions["sess_1"] = paid_session("b" * 32)

    outcome = await engine.confirm("sess_1")

    assert outcome.status == ReconciliationStatus.RECONCILED
    assert outcome.parcel_update.matched_count == 0
    assert (await ledger.find_by_transaction("pi_1")).parcel_id == "b" * 32


@pytest.mark.asyncio
async def test_lost_race_adopts_winning_tracking_id(database, verifier, parcel, parcels):
    ledger = BlindLedger(database.sessions)
    engine = ReconciliationEngine(verifier, parcels, ledger)
    verifier.sessions["sess_1"] = paid_session(parcel.id)
    await parcels.update_one(parcel.id, {"payment_status": "paid", "tracking_id": "ZAP-WINNER-000000"})
    await ledger.insert_one(
        PaymentRecord(
            parcel_id=parcel.id,
            amount=Decimal("15.00"),
            currency="usd",
            customer_email="a@x.com",
            transaction_id="pi_1",
            payment_status="paid",
            tracking_id="ZAP-WINNER-000000",
        )
    )

    outcome = await engine.confirm("sess_1")

    assert outcome.status == ReconciliationStatus.ALREADY_RECONCILED
    assert outcome.tracking_id == "ZAP-WINNER-000000"
    assert len(await ledger.find_many()) == 1
    assert (await parcels.find_by_id(parcel.id)).tracking_id == "ZAP-WINNER-000000"


@pytest.mark.asyncio
async def test_concurrent_confirmations_leave_one_record(engine, verifier, parcel, parcels, ledger):
    verifier.sessions["sess_1"] = paid_session(parcel.id)

    outcomes = await asyncio.gather(engine.confirm("sess_1"), engine.confirm("sess_1"))

    statuses = sorted(outcome.status.value for outcome in outcomes)
    assert statuses == ["already_reconciled", "reconciled"]
    assert outcomes[0].tracking_id == outcomes[1].tracking_id

    records = await ledger.find_many()
    assert len(records) == 1
    stored = await parcels.find_by_id(parcel.id)
    assert stored.tracking_id == records[0].tracking_id


@pytest.mark.asyncio
async def test_unverifiable_session_is_retryable(engine):
    outcome = await engine.confirm("sess_unknown")
    assert outcome.retryable is True


@pytest.mark.asyncio
async def test_malformed_session_is_not_retryable(engine, parcel, parcels, ledger):
    outcome = await engine.confirm("sess_malformed")

    assert outcome.status == ReconciliationStatus.VERIFICATION_FAILED
    assert outcome.retryable is False
    assert (await parcels.find_by_id(parcel.id)).payment_status == "unpaid"
    assert await ledger.find_many() == []


@pytest.mark.asyncio
async def test_rejected_insert_without_conflicting_record_is_store_error(database, verifier, parcel, parcels):
    engine = ReconciliationEngine(verifier, parcels, GhostLedger(database.sessions))
    verifier.sessions["sess_1"] = paid_session(parcel.id)

    with pytest.raises(StoreUnavailable):
        await engine.confirm("sess_1")
