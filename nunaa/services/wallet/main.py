"""Wallet service API + lifecycle.

Exposes balances, transfers, marketplace exchanges and reconciliation
endpoints; publishes wallet events from the outbox.
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI

from nunaa.common.db import SessionLocal
from nunaa.common.service_app import bootstrap_service, create_service_app, enforce_api_key, require_account_id
from nunaa.services.wallet.schemas import (
    AccountCreateRequest,
    AccountResponse,
    CreditRequest,
    ExchangeRequest,
    ListingCreateRequest,
    ListingResponse,
    TransactionPage,
    TransactionResponse,
    TransferRequest,
)
from nunaa.services.wallet.service import LedgerService

bootstrap_service(["TRANSACTIONS_PAGE_SIZE_MAX"])
service = LedgerService(SessionLocal)


def get_ledger() -> LedgerService:
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


app = create_service_app("Nunaa Wallet Service", lifespan=lifespan)


@app.post("/accounts", response_model=AccountResponse, dependencies=[Depends(enforce_api_key)])
def open_account(req: AccountCreateRequest, ledger: LedgerService = Depends(get_ledger)):
    """Registration hook: create the wallet account of a new user."""

    return ledger.open_account(req.email, req.role)


@app.get("/wallet/balance")
def balance(account_id: str = Depends(require_account_id), ledger: LedgerService = Depends(get_ledger)):
    return {"account_id": account_id, "balance": ledger.get_balance(account_id)}


@app.get("/wallet/transactions", response_model=TransactionPage)
def transactions(
    page: int = 1,
    page_size: int = 20,
    account_id: str = Depends(require_account_id),
    ledger: LedgerService = Depends(get_ledger),
):
    """Paginated history, newest first."""

    return ledger.list_transactions(account_id, page=page, page_size=page_size)


@app.post("/wallet/transfer", response_model=TransactionResponse)
def transfer(
    req: TransferRequest,
    account_id: str = Depends(require_account_id),
    ledger: LedgerService = Depends(get_ledger),
):
    to_account_id = req.to_account_id or ledger.get_account_by_email(req.to_email).account_id
    return ledger.transfer(account_id, to_account_id, req.amount, req.description)


@app.post("/wallet/exchange", response_model=TransactionResponse)
def exchange(
    req: ExchangeRequest,
    account_id: str = Depends(require_account_id),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.exchange(account_id, req.listing_id)


@app.get("/marketplace/listings", response_model=list[ListingResponse])
def listings(limit: int = 100, ledger: LedgerService = Depends(get_ledger)):
    return ledger.list_listings(limit=limit)


@app.post("/marketplace/listings", response_model=ListingResponse)
def create_listing(
    req: ListingCreateRequest,
    account_id: str = Depends(require_account_id),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.create_listing(account_id, req.title, req.price)


@app.post("/marketplace/listings/{listing_id}/archive", response_model=ListingResponse)
def archive_listing(
    listing_id: str,
    account_id: str = Depends(require_account_id),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.archive_listing(account_id, listing_id)


@app.post(
    "/admin/wallet/credit",
    response_model=TransactionResponse,
    dependencies=[Depends(enforce_api_key)],
)
def admin_credit(
    req: CreditRequest,
    account_id: str = Depends(require_account_id),
    ledger: LedgerService = Depends(get_ledger),
):
    """Credit an account on behalf of an administrator."""

    return ledger.admin_credit(account_id, req.to_account_id, req.amount, req.description)


@app.get("/reconciliation/{correlation_id}", dependencies=[Depends(enforce_api_key)])
def reconciliation(correlation_id: str, ledger: LedgerService = Depends(get_ledger)):
    """Return snapshot and pairing details for one transfer."""

    return ledger.reconcile(correlation_id)


@app.get("/reconciliation", dependencies=[Depends(enforce_api_key)])
def reconciliation_report(limit: int = 1000, ledger: LedgerService = Depends(get_ledger)):
    """Return global reconciliation summary over posted transactions."""

    return ledger.reconciliation_report(limit=limit)
