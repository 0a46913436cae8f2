import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Numeric, String
from zapshift.database import Base


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Parcel(Base):
    __tablename__ = "parcels"

    id = Column(String(32), primary_key=True, default=new_id)
    parcel_name = Column(String, nullable=False)
    parcel_type = Column(String, nullable=False)              # document | non-document
    weight = Column(Numeric(8, 2), nullable=True)
    sender_name = Column(String, nullable=False)
    sender_email = Column(String, nullable=False, index=True)
    receiver_name = Column(String, nullable=False)
    receiver_address = Column(String, nullable=False)
    cost = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    payment_status = Column(String, nullable=False, default="unpaid")   # unpaid | paid
    tracking_id = Column(String, nullable=True)               # set together with payment_status="paid"


class PaymentRecord(Base):
    __tablename__ = "paymentInfo"

    id = Column(String(32), primary_key=True, default=new_id)
    parcel_id = Column("parcelId", String, nullable=False, index=True)
    parcel_name = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False)
    customer_email = Column(String, nullable=True, index=True)
    transaction_id = Column("transactionId", String, nullable=False, unique=True, index=True)  # Stripe PaymentIntent ID
    payment_status = Column(String, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    tracking_id = Column(String, nullable=False)
