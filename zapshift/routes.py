from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from zapshift.auth import verify_token
from zapshift.errors import Forbidden, InvalidInput, NotFound, StoreUnavailable
from zapshift.models import Parcel
from zapshift.reconciliation import ReconciliationEngine, ReconciliationOutcome, ReconciliationStatus
from zapshift.schemas import CheckoutRequest, DeleteResult, ParcelCreate, ParcelOut, PaymentRecordOut
from zapshift.stores import ParcelStore, PaymentLedger, validate_id
from zapshift.stripe_service import PaymentSessionVerifier

router = APIRouter()

COMPLETED_SESSION_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}


def get_parcels(request: Request) -> ParcelStore:
    return request.app.state.parcels


def get_ledger(request: Request) -> PaymentLedger:
    return request.app.state.ledger


def get_verifier(request: Request) -> PaymentSessionVerifier:
    return request.app.state.verifier


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def ensure_same_identity(requested: Optional[str], email: str) -> str:
    if requested and requested.strip().lower() != email:
        raise Forbidden("Forbidden access")
    return email


async def load_owned_parcel(parcel_id: str, email: str, parcels: ParcelStore) -> Parcel:
    parcel = await parcels.find_by_id(validate_id(parcel_id))
    if parcel is None:
        raise NotFound(f"Parcel {parcel_id} not found")
    if parcel.sender_email != email:
        raise Forbidden("Forbidden access")
    return parcel


def confirmation_response(outcome: ReconciliationOutcome) -> JSONResponse:
    if outcome.status == ReconciliationStatus.VERIFICATION_FAILED:
        return JSONResponse(status_code=502, content={"status": outcome.status.value, "detail": outcome.detail})
    if outcome.status == ReconciliationStatus.NOT_PAID:
        return JSONResponse(
            status_code=402,
            content={"status": "pending", "payment_status": outcome.payment_status, "detail": outcome.detail},
        )

    body = {
        "status": outcome.status.value,
        "duplicate": outcome.duplicate,
        "tracking_id": outcome.tracking_id,
        "transaction_id": outcome.transaction_id,
    }
    if outcome.status == ReconciliationStatus.RECONCILED:
        body["parcel_updated"] = outcome.parcel_update.matched_count > 0
        body["payment_record_id"] = outcome.record_insert.inserted_id
    return JSONResponse(status_code=200, content=body)


@router.post("/parcels", response_model=ParcelOut, status_code=201)
async def create_parcel(
    request: ParcelCreate,
    email: str = Depends(verify_token),
    parcels: ParcelStore = Depends(get_parcels),
):
    ensure_same_identity(request.sender_email, email)
    parcel = Parcel(**request.model_dump(), payment_status="unpaid", tracking_id=None)
    result = await parcels.insert_one(parcel)
    if result.duplicate:
        raise StoreUnavailable("Parcel could not be stored")
    return parcel


@router.get("/parcels", response_model=list[ParcelOut])
async def list_parcels(
    email: Optional[str] = None,
    payment_status: Optional[Literal["unpaid", "paid"]] = None,
    identity: str = Depends(verify_token),
    parcels: ParcelStore = Depends(get_parcels),
):
    filters = {"sender_email": ensure_same_identity(email, identity)}
    if payment_status:
        filters["payment_status"] = payment_status
    return await parcels.find_many(filters, sort=[("created_at", -1)])


@router.get("/parcels/{parcel_id}", response_model=ParcelOut)
async def get_parcel(
    parcel_id: str,
    email: str = Depends(verify_token),
    parcels: ParcelStore = Depends(get_parcels),
):
    return await load_owned_parcel(parcel_id, email, parcels)


@router.delete("/parcels/{parcel_id}", response_model=DeleteResult)
async def delete_parcel(
    parcel_id: str,
    email: str = Depends(verify_token),
    parcels: ParcelStore = Depends(get_parcels),
):
    await load_owned_parcel(parcel_id, email, parcels)
    result = await parcels.delete_one(parcel_id)
    if result.deleted_count == 0:
        raise NotFound(f"Parcel {parcel_id} not found")
    return result


@router.post("/payment-checkout-session")
async def create_checkout_session(
    request: CheckoutRequest,
    http_request: Request,
    email: str = Depends(verify_token),
    parcels: ParcelStore = Depends(get_parcels),
    verifier: PaymentSessionVerifier = Depends(get_verifier),
):
    parcel = await load_owned_parcel(request.parcel_id, email, parcels)
    if parcel.payment_status == "paid":
        raise InvalidInput("Parcel is already paid")

    site = http_request.app.state.settings.site_domain
    url = await verifier.create_checkout_session(
        parcel,
        success_url=f"{site}/dashboard/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{site}/dashboard/payment-cancelled",
    )
    return {"url": url}


@router.patch("/payment-success")
async def payment_success(session_id: str, engine: ReconciliationEngine = Depends(get_engine)):
    outcome = await engine.confirm(session_id)
    return confirmation_response(outcome)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    verifier: PaymentSessionVerifier = Depends(get_verifier),
    engine: ReconciliationEngine = Depends(get_engine),
):
    payload = await request.body()
    event = verifier.construct_event(payload, stripe_signature)

    if event["type"] not in COMPLETED_SESSION_EVENTS:
        return {"ok": True}

    outcome = await engine.confirm(event["data"]["object"]["id"])
    if outcome.status == ReconciliationStatus.VERIFICATION_FAILED:
        if not outcome.retryable:
            # Not one of our parcel checkouts; redelivery would never change that.
            return {"ok": True, "status": "ignored"}
        # Non-2xx makes Stripe redeliver the event later.
        return confirmation_response(outcome)
    return {"ok": True, "status": outcome.status.value}


@router.get("/payments", response_model=list[PaymentRecordOut])
async def payment_history(
    email: Optional[str] = None,
    identity: str = Depends(verify_token),
    ledger: PaymentLedger = Depends(get_ledger),
):
    customer_email = ensure_same_identity(email, identity)
    return await ledger.find_many({"customer_email": customer_email}, sort=[("paid_at", -1)])
