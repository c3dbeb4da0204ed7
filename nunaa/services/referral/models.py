"""Referral program persistence."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nunaa.common.db import Base


class Referral(Base):
    """Link between a referrer and the account that signed up with their code."""

    __tablename__ = "referrals"

    referral_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    referrer_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    referred_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), unique=True)
    status: Mapped[str] = mapped_column(String, default="registered", index=True)
    rewarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
