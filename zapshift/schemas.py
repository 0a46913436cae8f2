from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ParcelCreate(BaseModel):
    parcel_name: str = Field(min_length=1)
    parcel_type: Literal["document", "non-document"] = "document"
    weight: Optional[Decimal] = Field(default=None, gt=0)
    sender_name: str = Field(min_length=1)
    sender_email: str
    receiver_name: str = Field(min_length=1)
    receiver_address: str = Field(min_length=1)
    cost: Decimal = Field(gt=0, decimal_places=2)

    @field_validator("sender_email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("sender_email must be an email address")
        return value


class ParcelOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    parcel_name: str
    parcel_type: str
    weight: Optional[Decimal]
    sender_name: str
    sender_email: str
    receiver_name: str
    receiver_address: str
    cost: Decimal
    created_at: datetime
    payment_status: str
    tracking_id: Optional[str]


class PaymentRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    parcel_id: str
    parcel_name: Optional[str]
    amount: Decimal
    currency: str
    customer_email: Optional[str]
    transaction_id: str
    payment_status: str
    paid_at: datetime
    tracking_id: str


class CheckoutRequest(BaseModel):
    parcel_id: str


class PaymentSession(BaseModel):
    """Stripe checkout session fields the reconciliation flow relies on."""

    id: str
    payment_status: str
    payment_intent: Optional[str] = None
    amount_total: int = Field(ge=0)
    currency: str
    customer_email: Optional[str] = None
    parcel_id: str = Field(min_length=1)
    parcel_name: Optional[str] = None

    @field_validator("customer_email")
    @classmethod
    def lower_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value

    @model_validator(mode="after")
    def paid_sessions_carry_intent(self):
        if self.payment_status == "paid" and not self.payment_intent:
            raise ValueError("paid session has no payment intent")
        return self

    @property
    def transaction_id(self) -> Optional[str]:
        return self.payment_intent


class UpdateResult(BaseModel):
    matched_count: int
    modified_count: int


class InsertResult(BaseModel):
    inserted_id: Optional[str] = None
    duplicate: bool = False


class DeleteResult(BaseModel):
    deleted_count: int
