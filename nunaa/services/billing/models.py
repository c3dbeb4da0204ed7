"""Billing persistence: payment records and legacy payment verifications."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from nunaa.common.db import Base


class PaymentRecord(Base):
    """One attempt to buy a pack, by bank transfer or card checkout."""

    __tablename__ = "payment_records"
    __table_args__ = (
        # At most one pending record per account and kind.
        Index(
            "uq_payment_records_pending",
            "account_id",
            "kind",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    kind: Mapped[str] = mapped_column(String, index=True)
    pack: Mapped[str] = mapped_column(String)
    amount_due: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    provider_session_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    provider_payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    needs_verification: Mapped[bool] = mapped_column(Boolean, default=False)
    credit_granted: Mapped[bool] = mapped_column(Boolean, default=False)
    # "superseded" when a newer checkout replaced it, "expired" when the provider closed it.
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LegacyVerification(Base):
    """Claim that the account paid on a pre-platform channel, awaiting admin review."""

    __tablename__ = "legacy_verifications"
    __table_args__ = (
        # One pending or confirmed claim per account; rejected ones may be retried.
        Index(
            "uq_legacy_verifications_active",
            "account_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
            sqlite_where=text("status IN ('pending', 'confirmed')"),
        ),
    )

    verification_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    paid_with: Mapped[str] = mapped_column(String)
    pack: Mapped[str] = mapped_column(String, default="teOhi")
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    credit_granted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
