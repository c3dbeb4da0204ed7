"""Billing service API + lifecycle.

Answers access checks, opens payment intents, receives bank/card
notifications and exposes the legacy verification review queue for ops.
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI, Header

from nunaa.common.config import settings
from nunaa.common.db import SessionLocal
from nunaa.common.service_app import (
    bootstrap_service,
    create_service_app,
    enforce_api_key,
    require_account_id,
    verify_webhook_secret,
)
from nunaa.services.billing.schemas import (
    BankTransferIntentRequest,
    BankTransferIntentResponse,
    BankTransferResponse,
    BankTransferWebhookRequest,
    CardCheckoutRequest,
    CardEventRequest,
    CardPaymentResponse,
    LegacyConfirmRequest,
    LegacyRequest,
    LegacyRequestResponse,
    LegacyVerificationResponse,
    RoleUpdateRequest,
    VerificationRequest,
)
from nunaa.services.billing.service import BillingService

bootstrap_service(["PAID_ACCESS_DAYS", "BANK_TRANSFER_WEBHOOK_SECRET", "CARD_WEBHOOK_SECRET"])
service = BillingService(SessionLocal)


def get_billing() -> BillingService:
    return service


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with application lifecycle."""

    publisher_task = asyncio.create_task(service.publisher.run_forever())
    yield
    publisher_task.cancel()
    with suppress(asyncio.CancelledError):
        await publisher_task
    await service.publisher.bus.close()


app = create_service_app("Nunaa Billing Service", lifespan=lifespan)


@app.get("/access/me")
def access_me(account_id: str = Depends(require_account_id), billing: BillingService = Depends(get_billing)):
    return billing.access_summary(account_id)


@app.get("/access/check")
def access_check(
    required: str,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    """Gate for content collaborators: does the caller reach `required` tier?"""

    return {"account_id": account_id, "required": required, "allowed": billing.account_has_access(account_id, required)}


@app.post("/billing/bank-transfer/intent", response_model=BankTransferIntentResponse)
def bank_transfer_intent(
    req: BankTransferIntentRequest,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    record, reused = billing.create_or_reuse_bank_transfer_intent(account_id, req.pack)
    return {**BankTransferResponse.model_validate(record).model_dump(), "reused": reused}


@app.get("/billing/bank-transfer/me", response_model=BankTransferResponse | None)
def bank_transfer_me(account_id: str = Depends(require_account_id), billing: BillingService = Depends(get_billing)):
    return billing.latest_payment(account_id, "bank_transfer")


@app.post("/billing/bank-transfer/request-verification")
def bank_transfer_request_verification(
    req: VerificationRequest,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    return billing.request_bank_transfer_verification(account_id, req.payment_id)


@app.post("/billing/bank-transfer/webhook")
def bank_transfer_webhook(
    req: BankTransferWebhookRequest,
    x_webhook_secret: str | None = Header(default=None),
    billing: BillingService = Depends(get_billing),
):
    """Bank feed notification, authenticated by a shared secret."""

    verify_webhook_secret(x_webhook_secret, settings.bank_transfer_webhook_secret)
    return billing.process_bank_transfer_webhook(
        req.reference_id,
        req.amount,
        req.bank_transaction_id,
        payer_name=req.payer_name,
        paid_at=req.paid_at,
    )


@app.post("/billing/card/checkout", response_model=CardPaymentResponse)
def card_checkout(
    req: CardCheckoutRequest,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    return billing.open_card_checkout(account_id, req.pack, req.provider_session_id)


@app.post("/billing/card/webhook")
def card_webhook(
    req: CardEventRequest,
    x_webhook_secret: str | None = Header(default=None),
    billing: BillingService = Depends(get_billing),
):
    verify_webhook_secret(x_webhook_secret, settings.card_webhook_secret)
    return billing.process_card_event(
        req.event_type,
        req.provider_session_id,
        payment_intent_id=req.payment_intent_id,
        customer_id=req.customer_id,
    )


@app.post("/billing/legacy/request-verification", response_model=LegacyRequestResponse)
def legacy_request(
    req: LegacyRequest,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    record, already_requested = billing.request_legacy_verification(account_id, req.paid_with)
    return {**LegacyVerificationResponse.model_validate(record).model_dump(), "already_requested": already_requested}


@app.get("/billing/legacy/me", response_model=LegacyVerificationResponse | None)
def legacy_me(account_id: str = Depends(require_account_id), billing: BillingService = Depends(get_billing)):
    return billing.latest_legacy_verification(account_id)


@app.get(
    "/ops/bank-transfer/pending",
    response_model=list[BankTransferResponse],
    dependencies=[Depends(enforce_api_key)],
)
def pending_bank_transfers(limit: int = 100, billing: BillingService = Depends(get_billing)):
    """Bank transfers flagged by their payer for manual confirmation."""

    return billing.list_pending_bank_verifications(limit=limit)


@app.post(
    "/ops/bank-transfer/{payment_id}/confirm",
    response_model=BankTransferResponse,
    dependencies=[Depends(enforce_api_key)],
)
def confirm_bank_transfer(
    payment_id: str,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    return billing.confirm_bank_transfer(payment_id, account_id)


@app.get(
    "/ops/card/pending",
    response_model=list[CardPaymentResponse],
    dependencies=[Depends(enforce_api_key)],
)
def pending_card_payments(limit: int = 100, billing: BillingService = Depends(get_billing)):
    """Checkouts the provider charged after a newer checkout had replaced them."""

    return billing.list_pending_card_verifications(limit=limit)


@app.post(
    "/ops/card/{payment_id}/confirm",
    response_model=CardPaymentResponse,
    dependencies=[Depends(enforce_api_key)],
)
def confirm_card_payment(
    payment_id: str,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    return billing.confirm_card_payment(payment_id, account_id)


@app.get(
    "/ops/legacy/pending",
    response_model=list[LegacyVerificationResponse],
    dependencies=[Depends(enforce_api_key)],
)
def pending_legacy(limit: int = 100, billing: BillingService = Depends(get_billing)):
    return billing.list_pending_legacy_verifications(limit=limit)


@app.post(
    "/ops/legacy/{verification_id}/confirm",
    response_model=LegacyVerificationResponse,
    dependencies=[Depends(enforce_api_key)],
)
def confirm_legacy(
    verification_id: str,
    req: LegacyConfirmRequest,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    """Accept a legacy claim and grant access."""

    return billing.mark_confirmed(
        verification_id,
        account_id,
        upgrade_to_premium=req.upgrade_to_premium,
        expiration_day=req.expiration_day,
        expiration_month=req.expiration_month,
    )


@app.post(
    "/ops/legacy/{verification_id}/reject",
    response_model=LegacyVerificationResponse,
    dependencies=[Depends(enforce_api_key)],
)
def reject_legacy(
    verification_id: str,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    return billing.mark_rejected(verification_id, account_id)


@app.patch("/ops/accounts/{target_id}/role", dependencies=[Depends(enforce_api_key)])
def update_role(
    target_id: str,
    req: RoleUpdateRequest,
    account_id: str = Depends(require_account_id),
    billing: BillingService = Depends(get_billing),
):
    account = billing.set_role(account_id, target_id, req.role)
    return {"account_id": account.account_id, "role": account.role}
