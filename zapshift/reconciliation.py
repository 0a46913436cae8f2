"""
Payment reconciliation.

Turns a Stripe checkout session confirmation into a paid parcel and exactly
one ledger record. Confirmation can arrive more than once for the same
payment (client retries, webhook redelivery), so every attempt first looks
the transaction up in the ledger. The unique index on the transaction id is
what closes the race between two attempts that both pass that lookup.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from zapshift.errors import ExternalServiceError, MalformedSession, StoreUnavailable
from zapshift.models import PaymentRecord
from zapshift.schemas import InsertResult, PaymentSession, UpdateResult
from zapshift.stores import ParcelStore, PaymentLedger
from zapshift.stripe_service import PaymentSessionVerifier
from zapshift.tracking import generate_tracking_id

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


class ReconciliationStatus(str, Enum):
    RECONCILED = "reconciled"
    ALREADY_RECONCILED = "already_reconciled"
    NOT_PAID = "not_paid"
    VERIFICATION_FAILED = "verification_failed"


class ReconciliationOutcome(BaseModel):
    status: ReconciliationStatus
    session_id: str
    tracking_id: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_status: Optional[str] = None
    parcel_update: Optional[UpdateResult] = None
    record_insert: Optional[InsertResult] = None
    detail: Optional[str] = None
    retryable: bool = True

    @property
    def duplicate(self) -> bool:
        return self.status == ReconciliationStatus.ALREADY_RECONCILED


def minor_to_major(amount_total: int) -> Decimal:
    return (Decimal(amount_total) / 100).quantize(CENTS)


class ReconciliationEngine:
    def __init__(self, verifier: PaymentSessionVerifier, parcels: ParcelStore, ledger: PaymentLedger):
        self.verifier = verifier
        self.parcels = parcels
        self.ledger = ledger

    async def confirm(self, session_id: str) -> ReconciliationOutcome:
        """Run one confirmation attempt for a checkout session.

        Returns one of the four terminal outcomes. Store failures raise
        StoreUnavailable; nothing is retried here.
        """
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            try:
                session = await self.verifier.resolve(session_id)
            except ExternalServiceError as exc:
                logger.warning("payment_verification_failed", error=exc.message)
                return ReconciliationOutcome(
                    status=ReconciliationStatus.VERIFICATION_FAILED,
                    session_id=session_id,
                    detail=exc.message,
                    retryable=not isinstance(exc, MalformedSession),
                )

            if session.transaction_id:
                existing = await self.ledger.find_by_transaction(session.transaction_id)
                if existing is not None:
                    logger.info("payment_already_reconciled", transaction_id=existing.transaction_id)
                    return self._already_reconciled(session, existing)

            if session.payment_status != "paid":
                logger.info("payment_not_paid", payment_status=session.payment_status)
                return ReconciliationOutcome(
                    status=ReconciliationStatus.NOT_PAID,
                    session_id=session_id,
                    payment_status=session.payment_status,
                    detail="Payment is still pending",
                )

            return await self._apply(session)

    async def _apply(self, session: PaymentSession) -> ReconciliationOutcome:
        tracking_id = generate_tracking_id()
        parcel_update = await self.parcels.update_one(
            session.parcel_id, {"payment_status": "paid", "tracking_id": tracking_id}
        )
        if parcel_update.matched_count == 0:
            # The payment happened; record it anyway and leave the mismatch for operators.
            logger.error(
                "parcel_not_found_for_payment",
                parcel_id=session.parcel_id,
                transaction_id=session.transaction_id,
            )

        record = PaymentRecord(
            parcel_id=session.parcel_id,
            parcel_name=session.parcel_name,
            amount=minor_to_major(session.amount_total),
            currency=session.currency,
            customer_email=session.customer_email,
            transaction_id=session.transaction_id,
            payment_status=session.payment_status,
            paid_at=datetime.now(timezone.utc),
            tracking_id=tracking_id,
        )
        record_insert = await self.ledger.insert_one(record)

        if record_insert.duplicate:
            return await self._lost_race(session, parcel_update)

        logger.info(
            "payment_reconciled",
            parcel_id=session.parcel_id,
            transaction_id=session.transaction_id,
            tracking_id=tracking_id,
            amount=str(record.amount),
        )
        return ReconciliationOutcome(
            status=ReconciliationStatus.RECONCILED,
            session_id=session.id,
            tracking_id=tracking_id,
            transaction_id=session.transaction_id,
            payment_status=session.payment_status,
            parcel_update=parcel_update,
            record_insert=record_insert,
        )

    async def _lost_race(self, session: PaymentSession, parcel_update: UpdateResult) -> ReconciliationOutcome:
        """A concurrent attempt recorded this transaction first; align the parcel with it."""
        winner = await self.ledger.find_by_transaction(session.transaction_id)
        if winner is None:
            raise StoreUnavailable(f"ledger rejected {session.transaction_id} but holds no record of it")

        if parcel_update.matched_count:
            await self.parcels.update_one(
                session.parcel_id, {"payment_status": "paid", "tracking_id": winner.tracking_id}
            )
        logger.warning(
            "duplicate_transaction_suppressed",
            transaction_id=winner.transaction_id,
            tracking_id=winner.tracking_id,
        )
        return self._already_reconciled(session, winner)

    @staticmethod
    def _already_reconciled(session: PaymentSession, record: PaymentRecord) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            status=ReconciliationStatus.ALREADY_RECONCILED,
            session_id=session.id,
            tracking_id=record.tracking_id,
            transaction_id=record.transaction_id,
            payment_status=record.payment_status,
        )
