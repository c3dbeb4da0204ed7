"""API request/response schemas for wallet endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AccountCreateRequest(BaseModel):
    """Registration hook payload sent by the authentication service."""

    email: str = Field(min_length=3)
    role: str = "user"


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: str
    email: str
    role: str
    balance: int
    paid_access_expires_at: datetime | None = None


class TransferRequest(BaseModel):
    """Recipient is given by id or by email."""

    to_account_id: str | None = None
    to_email: str | None = None
    amount: int = Field(gt=0)
    description: str = Field(min_length=1, max_length=500)

    @model_validator(mode="after")
    def _one_recipient(self):
        if not self.to_account_id and not self.to_email:
            raise ValueError("to_account_id or to_email is required")
        return self


class ExchangeRequest(BaseModel):
    listing_id: str = Field(min_length=1)


class CreditRequest(BaseModel):
    """Admin credit of an account."""

    to_account_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    description: str = Field(min_length=1, max_length=500)


class ListingCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    price: int = Field(gt=0)


class ListingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    listing_id: str
    seller_id: str
    title: str
    price: int
    status: str


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    correlation_id: str
    type: str
    account_id: str
    amount: int
    balance_before: int
    balance_after: int
    status: str
    from_account_id: str | None
    to_account_id: str
    listing_id: str | None
    description: str | None
    created_at: datetime | None = None


class TransactionPage(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool
