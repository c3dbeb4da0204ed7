"""Wallet database models: accounts, append-only transactions and listings."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nunaa.common.db import Base


class Account(Base):
    """Platform member with a credit balance. Only the ledger mutates `balance`."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    account_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    role: Mapped[str] = mapped_column(String, default="user", index=True)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    paid_access_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    referral_code: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Transaction(Base):
    """Immutable ledger row carrying the balance snapshot of `account_id`."""

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_from_created", "from_account_id", "created_at"),
        Index("ix_transactions_to_created", "to_account_id", "created_at"),
    )

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    balance_before: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="completed")
    # NULL means a platform grant (signup credits, referral reward, admin credit).
    from_account_id: Mapped[str | None] = mapped_column(ForeignKey("accounts.account_id"), nullable=True)
    to_account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"))
    listing_id: Mapped[str | None] = mapped_column(ForeignKey("listings.listing_id"), nullable=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )

    @property
    def delta(self) -> int:
        return self.balance_after - self.balance_before


class Listing(Base):
    """Marketplace item priced in credits."""

    __tablename__ = "listings"
    __table_args__ = (CheckConstraint("price > 0", name="ck_listings_price_positive"),)

    listing_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    title: Mapped[str] = mapped_column(String)
    price: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
