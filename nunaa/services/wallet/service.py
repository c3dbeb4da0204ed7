"""Ledger engine: atomic transfers, listing exchanges and credit postings.

Every balance change goes through `_post`, which writes one `Transaction` row
with the before/after snapshot of the account it touches. Callers must hold
the row lock of that account (see `lock_accounts`).
"""

from contextlib import contextmanager
from time import perf_counter
from uuid import uuid4

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError

from nunaa.common.config import settings
from nunaa.common.db import unit_of_work
from nunaa.common.entitlements import Role, role_at_least
from nunaa.common.errors import (
    AccountNotFound,
    CoreError,
    InsufficientFunds,
    InvalidArgument,
    LedgerInvariantViolation,
    ListingUnavailable,
    PermissionDenied,
)
from nunaa.common.events import EventEnvelope
from nunaa.common.logging import logger
from nunaa.common.metrics import credits_moved_total, ledger_operation_latency_seconds, ledger_operations_total
from nunaa.common.outbox import OutboxPublisher, enqueue_event
from nunaa.services.wallet.models import Account, Listing, Transaction

# Sign applied to `amount` for each transaction type, from the snapshot account's view.
TRANSACTION_SIGNS = {"debit": -1, "credit": 1, "exchange": -1}
BALANCE_CONSTRAINT = "ck_accounts_balance_non_negative"


def _validate_amount(amount, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidArgument(f"{field} must be a positive integer", **{field: amount})
    return amount


def _validate_text(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise InvalidArgument(f"{field} is required")
    return value.strip()


class LedgerService:
    """Owns account balances, the transaction log and marketplace listings."""

    def __init__(self, session_factory, service_name: str = "wallet") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.publisher = OutboxPublisher(session_factory, service_name)

    @contextmanager
    def _observed(self, operation: str):
        start = perf_counter()
        outcome = "error"
        try:
            yield
            outcome = "ok"
        except CoreError as exc:
            outcome = exc.code.lower()
            raise
        finally:
            ledger_operations_total.labels(
                service=self.service_name, operation=operation, outcome=outcome
            ).inc()
            ledger_operation_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                max(0.0, perf_counter() - start)
            )

    # -- accounts -----------------------------------------------------------

    def open_account(self, email: str, role: str = "user") -> Account:
        """Create a zero-balance account (registration hook)."""

        email = _validate_text(email, "email").lower()
        if "@" not in email:
            raise InvalidArgument("email is invalid", email=email)
        role = Role.parse(role).value
        try:
            with unit_of_work(self.session_factory) as db:
                if db.execute(select(Account.account_id).where(Account.email == email)).first():
                    raise InvalidArgument("email already registered", email=email)
                account = Account(email=email, role=role, balance=0)
                db.add(account)
        except IntegrityError as exc:
            raise InvalidArgument("email already registered", email=email) from exc
        logger.info("account_opened account_id=%s role=%s", account.account_id, role)
        return account

    def require_account(self, db, account_id: str) -> Account:
        account = db.get(Account, account_id)
        if account is None or not account.is_active:
            raise AccountNotFound(f"Account not found: {account_id}", account_id=account_id)
        return account

    def get_account(self, account_id: str) -> Account:
        with self.session_factory() as db:
            return self.require_account(db, account_id)

    def get_account_by_email(self, email: str) -> Account:
        email = _validate_text(email, "email").lower()
        with self.session_factory() as db:
            account = db.execute(select(Account).where(Account.email == email)).scalar_one_or_none()
            if account is None or not account.is_active:
                raise AccountNotFound("No account with this email", email=email)
            return account

    def get_balance(self, account_id: str) -> int:
        return self.get_account(account_id).balance

    def lock_accounts(self, db, *account_ids: str) -> dict[str, Account]:
        """Row-lock accounts in id order and return them keyed by id."""

        ids = sorted(set(account_ids))
        rows = (
            db.execute(
                select(Account)
                .where(Account.account_id.in_(ids))
                .order_by(Account.account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )
        found = {row.account_id: row for row in rows if row.is_active}
        for account_id in ids:
            if account_id not in found:
                raise AccountNotFound(f"Account not found: {account_id}", account_id=account_id)
        return found

    # -- postings -----------------------------------------------------------

    def _post(self, db, account: Account, tx_type: str, amount: int, correlation_id: str, **fields) -> Transaction:
        before = account.balance
        after = before + TRANSACTION_SIGNS[tx_type] * amount
        if after < 0:
            raise InsufficientFunds(
                "Insufficient balance",
                account_id=account.account_id,
                balance=before,
                amount=amount,
            )
        account.balance = after
        row = Transaction(
            correlation_id=correlation_id,
            type=tx_type,
            account_id=account.account_id,
            amount=amount,
            balance_before=before,
            balance_after=after,
            status="completed",
            **fields,
        )
        db.add(row)
        return row

    def _flush(self, db) -> None:
        try:
            db.flush()
        except IntegrityError as exc:
            # The balance CHECK constraint is the last line behind the lock.
            if BALANCE_CONSTRAINT in str(exc.orig):
                raise InsufficientFunds("Insufficient balance") from exc
            raise

    def post_credit(
        self,
        db,
        account: Account,
        amount: int,
        description: str,
        from_account_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Transaction:
        """Credit a locked account inside the caller's unit of work."""

        _validate_amount(amount)
        row = self._post(
            db,
            account,
            "credit",
            amount,
            correlation_id or str(uuid4()),
            from_account_id=from_account_id,
            to_account_id=account.account_id,
            description=description,
        )
        credits_moved_total.labels(service=self.service_name, operation="credit").inc(amount)
        return row

    def credit(
        self, to_account_id: str, amount: int, description: str, from_account_id: str | None = None
    ) -> Transaction:
        """Platform credit in its own unit of work."""

        _validate_amount(amount)
        description = _validate_text(description, "description")
        with self._observed("credit"):
            with unit_of_work(self.session_factory) as db:
                account = self.lock_accounts(db, to_account_id)[to_account_id]
                row = self.post_credit(db, account, amount, description, from_account_id=from_account_id)
        logger.info("credit_posted account_id=%s amount=%s", to_account_id, amount)
        return row

    def admin_credit(self, admin_account_id: str, to_account_id: str, amount: int, description: str) -> Transaction:
        admin = self.get_account(admin_account_id)
        if not role_at_least(admin.role, Role.ADMIN):
            raise PermissionDenied("Admin role required", account_id=admin_account_id)
        return self.credit(to_account_id, amount, description, from_account_id=admin_account_id)

    def transfer(
        self, from_account_id: str, to_account_id: str, amount: int, description: str
    ) -> Transaction:
        """Move `amount` credits between two accounts; returns the debit row."""

        _validate_amount(amount)
        description = _validate_text(description, "description")
        if from_account_id == to_account_id:
            raise InvalidArgument("Cannot transfer to the same account")

        with self._observed("transfer"):
            with unit_of_work(self.session_factory) as db:
                accounts = self.lock_accounts(db, from_account_id, to_account_id)
                source, destination = accounts[from_account_id], accounts[to_account_id]
                correlation_id = str(uuid4())
                parties = {"from_account_id": from_account_id, "to_account_id": to_account_id}
                debit = self._post(
                    db, source, "debit", amount, correlation_id, description=description, **parties
                )
                credit_row = self._post(
                    db, destination, "credit", amount, correlation_id, description=description, **parties
                )
                if debit.delta + credit_row.delta != 0:
                    raise LedgerInvariantViolation("transfer pair is not zero-sum", correlation_id=correlation_id)
                self._flush(db)
                enqueue_event(
                    db,
                    self.service_name,
                    "transfer",
                    EventEnvelope(
                        event_type="wallet.transfer.completed",
                        aggregate_id=correlation_id,
                        payload={"account_id": from_account_id, "amount": amount, **parties},
                    ),
                )
        credits_moved_total.labels(service=self.service_name, operation="transfer").inc(amount)
        logger.info(
            "transfer_completed correlation_id=%s from=%s to=%s amount=%s",
            correlation_id,
            from_account_id,
            to_account_id,
            amount,
        )
        return debit

    # -- marketplace --------------------------------------------------------

    def create_listing(self, seller_id: str, title: str, price: int) -> Listing:
        title = _validate_text(title, "title")
        _validate_amount(price, "price")
        with unit_of_work(self.session_factory) as db:
            self.require_account(db, seller_id)
            listing = Listing(seller_id=seller_id, title=title, price=price, status="active")
            db.add(listing)
        logger.info("listing_created listing_id=%s seller=%s price=%s", listing.listing_id, seller_id, price)
        return listing

    def _lock_listing(self, db, listing_id: str) -> Listing | None:
        return db.execute(
            select(Listing)
            .where(Listing.listing_id == listing_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def archive_listing(self, seller_id: str, listing_id: str) -> Listing:
        with unit_of_work(self.session_factory) as db:
            listing = self._lock_listing(db, listing_id)
            if listing is None:
                raise ListingUnavailable("Listing not found", listing_id=listing_id)
            if listing.seller_id != seller_id:
                raise PermissionDenied("Only the seller can archive a listing", listing_id=listing_id)
            if listing.status == "sold":
                raise ListingUnavailable("Listing already sold", listing_id=listing_id)
            listing.status = "archived"
        return listing

    def list_listings(self, status: str = "active", limit: int = 100) -> list[Listing]:
        limit = min(max(1, limit), settings.list_limit_max)
        with self.session_factory() as db:
            return (
                db.execute(
                    select(Listing).where(Listing.status == status).order_by(Listing.created_at.desc()).limit(limit)
                )
                .scalars()
                .all()
            )

    def exchange(self, buyer_account_id: str, listing_id: str) -> Transaction:
        """Buy an active listing: buyer pays seller and the listing becomes sold, all at once."""

        with self._observed("exchange"):
            with unit_of_work(self.session_factory) as db:
                listing = self._lock_listing(db, listing_id)
                if listing is None or listing.status != "active":
                    raise ListingUnavailable("Listing not available", listing_id=listing_id)
                if listing.seller_id == buyer_account_id:
                    raise InvalidArgument("You cannot buy your own listing", listing_id=listing_id)
                accounts = self.lock_accounts(db, buyer_account_id, listing.seller_id)
                buyer, seller = accounts[buyer_account_id], accounts[listing.seller_id]
                correlation_id = str(uuid4())
                row = self._post(
                    db,
                    buyer,
                    "exchange",
                    listing.price,
                    correlation_id,
                    from_account_id=buyer.account_id,
                    to_account_id=seller.account_id,
                    listing_id=listing.listing_id,
                    description=f"Exchange for listing: {listing.title}",
                )
                seller.balance += listing.price
                listing.status = "sold"
                self._flush(db)
                enqueue_event(
                    db,
                    self.service_name,
                    "listing",
                    EventEnvelope(
                        event_type="wallet.exchange.completed",
                        aggregate_id=listing.listing_id,
                        payload={
                            "account_id": buyer.account_id,
                            "seller_id": seller.account_id,
                            "price": listing.price,
                            "transaction_id": row.transaction_id,
                        },
                    ),
                )
        credits_moved_total.labels(service=self.service_name, operation="exchange").inc(row.amount)
        logger.info(
            "exchange_completed listing_id=%s buyer=%s seller=%s price=%s",
            listing_id,
            buyer_account_id,
            row.to_account_id,
            row.amount,
        )
        return row

    # -- history and reconciliation ----------------------------------------

    def list_transactions(self, account_id: str, page: int = 1, page_size: int = 20) -> dict:
        """Newest-first history of rows the account is a party to."""

        page = max(1, page)
        page_size = min(max(1, page_size), settings.transactions_page_size_max)
        visible = or_(
            and_(Transaction.type == "debit", Transaction.from_account_id == account_id),
            and_(Transaction.type == "credit", Transaction.to_account_id == account_id),
            and_(
                Transaction.type == "exchange",
                or_(Transaction.from_account_id == account_id, Transaction.to_account_id == account_id),
            ),
        )
        with self.session_factory() as db:
            self.require_account(db, account_id)
            total = db.execute(select(func.count()).select_from(Transaction).where(visible)).scalar_one()
            items = (
                db.execute(
                    select(Transaction)
                    .where(visible)
                    .order_by(Transaction.created_at.desc(), Transaction.transaction_id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
                .scalars()
                .all()
            )
        total_pages = (total + page_size - 1) // page_size
        return {
            "items": items,
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        }

    def reconcile(self, correlation_id: str) -> dict:
        """Check snapshot arithmetic and zero-sum pairing for one correlation id."""

        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(Transaction)
                    .where(Transaction.correlation_id == correlation_id)
                    .order_by(Transaction.type)
                )
                .scalars()
                .all()
            )
        arithmetic_ok = all(
            row.balance_after == row.balance_before + TRANSACTION_SIGNS[row.type] * row.amount for row in rows
        )
        net = sum(row.delta for row in rows)
        paired = not any(row.type == "debit" for row in rows) or net == 0
        return {
            "correlation_id": correlation_id,
            "balanced": bool(rows) and arithmetic_ok and paired,
            "net": net,
            "entries": [
                {
                    "transaction_id": row.transaction_id,
                    "type": row.type,
                    "account_id": row.account_id,
                    "amount": row.amount,
                    "balance_before": row.balance_before,
                    "balance_after": row.balance_after,
                }
                for row in rows
            ],
        }

    def reconciliation_report(self, limit: int = 1000) -> dict:
        """Global summary of transfer groups whose deltas do not sum to zero."""

        delta = Transaction.balance_after - Transaction.balance_before
        with self.session_factory() as db:
            groups = db.execute(
                select(
                    Transaction.correlation_id,
                    func.sum(delta).label("net"),
                    func.sum(case((Transaction.type == "debit", 1), else_=0)).label("debits"),
                    func.count(Transaction.transaction_id).label("entry_count"),
                )
                .group_by(Transaction.correlation_id)
                .order_by(Transaction.correlation_id)
                .limit(limit)
            ).all()
            bad_snapshots = (
                db.execute(
                    select(Transaction.transaction_id).where(
                        or_(
                            and_(Transaction.type == "credit", delta != Transaction.amount),
                            and_(Transaction.type != "credit", delta != -Transaction.amount),
                        )
                    )
                )
                .scalars()
                .all()
            )
            # An account's balance is the sum of its own snapshot deltas plus
            # the exchange proceeds that credited it without a row of its own.
            own = (
                select(func.coalesce(func.sum(delta), 0))
                .where(Transaction.account_id == Account.account_id)
                .scalar_subquery()
            )
            proceeds = (
                select(func.coalesce(func.sum(Transaction.amount), 0))
                .where(Transaction.type == "exchange", Transaction.to_account_id == Account.account_id)
                .scalar_subquery()
            )
            drifted = db.execute(
                select(Account.account_id, Account.balance, (own + proceeds).label("expected"))
                .where(Account.balance != own + proceeds)
                .order_by(Account.account_id)
                .limit(limit)
            ).all()
        imbalanced = [
            {
                "correlation_id": row.correlation_id,
                "net": int(row.net or 0),
                "entry_count": int(row.entry_count or 0),
            }
            for row in groups
            if int(row.debits or 0) > 0 and int(row.net or 0) != 0
        ]
        return {
            "groups_checked": len(groups),
            "imbalanced_count": len(imbalanced),
            "imbalanced_groups": imbalanced,
            "snapshot_mismatches": list(bad_snapshots),
            "balance_mismatches": [
                {"account_id": row.account_id, "balance": row.balance, "expected": int(row.expected)}
                for row in drifted
            ],
        }
