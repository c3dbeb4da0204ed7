"""API request/response schemas for billing and access endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PackCode = Literal["teOhi", "umete"]


class BankTransferIntentRequest(BaseModel):
    pack: PackCode


class BankTransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    pack: str
    amount_due: int
    status: str
    reference_id: str | None
    needs_verification: bool
    paid_at: datetime | None = None
    created_at: datetime | None = None


class BankTransferIntentResponse(BankTransferResponse):
    reused: bool


class BankTransferWebhookRequest(BaseModel):
    """Notification from the bank feed for one incoming transfer."""

    reference_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    bank_transaction_id: str = Field(min_length=1)
    payer_name: str | None = None
    paid_at: datetime | None = None


class VerificationRequest(BaseModel):
    payment_id: str | None = None


class CardCheckoutRequest(BaseModel):
    """Checkout session already created with the card provider by the client."""

    pack: PackCode
    provider_session_id: str = Field(min_length=1)


class CardEventRequest(BaseModel):
    event_type: str = Field(min_length=1)
    provider_session_id: str = Field(min_length=1)
    payment_intent_id: str | None = None
    customer_id: str | None = None


class CardPaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    pack: str
    amount_due: int
    status: str
    provider_session_id: str | None
    paid_at: datetime | None = None
    needs_verification: bool = False


class LegacyRequest(BaseModel):
    paid_with: str = Field(min_length=1)


class LegacyVerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    verification_id: str
    account_id: str
    paid_with: str
    pack: str
    status: str
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime | None = None


class LegacyRequestResponse(LegacyVerificationResponse):
    already_requested: bool


class LegacyConfirmRequest(BaseModel):
    upgrade_to_premium: bool = False
    expiration_day: int | None = Field(default=None, ge=1, le=31)
    expiration_month: int | None = Field(default=None, ge=1, le=12)


class RoleUpdateRequest(BaseModel):
    role: str = Field(min_length=1)
