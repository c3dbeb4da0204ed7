"""Ledger engine tests: transfers, exchanges, credits and history."""

import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from nunaa.common.config import settings
from nunaa.common.db import unit_of_work
from nunaa.common.errors import (
    AccountNotFound,
    InsufficientFunds,
    InvalidArgument,
    ListingUnavailable,
    PermissionDenied,
    StorageUnavailable,
)
from nunaa.common.outbox import OutboxEvent
from nunaa.services.wallet.models import Account, Transaction


def count_transactions(session_factory) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(Transaction)).scalar_one()


def test_transfer_moves_balance_and_records_snapshots(ledger, make_account):
    """A=1000, B=0, transfer 300: A=700, B=300 and two matching rows."""

    a = make_account(balance=1000)
    b = make_account()

    debit = ledger.transfer(a, b, 300, "gift")

    assert ledger.get_balance(a) == 700
    assert ledger.get_balance(b) == 300
    report = ledger.reconcile(debit.correlation_id)
    assert report["balanced"] is True
    assert report["net"] == 0
    entries = {entry["type"]: entry for entry in report["entries"]}
    assert entries["debit"]["account_id"] == a
    assert (entries["debit"]["balance_before"], entries["debit"]["balance_after"]) == (1000, 700)
    assert entries["credit"]["account_id"] == b
    assert (entries["credit"]["balance_before"], entries["credit"]["balance_after"]) == (0, 300)


def test_transfer_over_balance_is_a_no_op(ledger, make_account, session_factory):
    a = make_account(balance=100)
    b = make_account(balance=5)
    before = count_transactions(session_factory)

    with pytest.raises(InsufficientFunds):
        ledger.transfer(a, b, 101, "too much")

    assert ledger.get_balance(a) == 100
    assert ledger.get_balance(b) == 5
    assert count_transactions(session_factory) == before


@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
def test_transfer_rejects_invalid_amounts(ledger, make_account, amount):
    a = make_account(balance=100)
    b = make_account()
    with pytest.raises(InvalidArgument):
        ledger.transfer(a, b, amount, "bad amount")


def test_transfer_preconditions(ledger, make_account):
    a = make_account(balance=100)
    b = make_account()
    with pytest.raises(InvalidArgument):
        ledger.transfer(a, a, 10, "to myself")
    with pytest.raises(InvalidArgument):
        ledger.transfer(a, b, 10, "   ")
    with pytest.raises(AccountNotFound):
        ledger.transfer(a, "missing-account", 10, "nobody")
    assert ledger.get_balance(a) == 100


def test_concurrent_transfers_never_overdraw(ledger, make_account):
    """Two 700-credit transfers race on a 1000 balance: exactly one wins."""

    source = make_account(balance=1000)
    targets = [make_account(), make_account()]
    barrier = threading.Barrier(len(targets))
    outcomes = []

    def attempt(target):
        barrier.wait()
        try:
            ledger.transfer(source, target, 700, "race")
            outcomes.append("ok")
        except InsufficientFunds:
            outcomes.append("insufficient")

    threads = [threading.Thread(target=attempt, args=(target,)) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["insufficient", "ok"]
    assert ledger.get_balance(source) == 300
    assert sorted(ledger.get_balance(t) for t in targets) == [0, 700]


def test_exchange_pays_seller_and_sells_listing(ledger, make_account, session_factory):
    """Listing 500, buyer 500: buyer ends at 0, seller +500, listing sold."""

    seller = make_account(balance=20)
    buyer = make_account(balance=500)
    listing = ledger.create_listing(seller, "Tapa cloth", 500)

    tx = ledger.exchange(buyer, listing.listing_id)

    assert tx.type == "exchange"
    assert (tx.balance_before, tx.balance_after) == (500, 0)
    assert tx.description == "Exchange for listing: Tapa cloth"
    assert ledger.get_balance(buyer) == 0
    assert ledger.get_balance(seller) == 520
    assert [item.listing_id for item in ledger.list_listings(status="sold")] == [listing.listing_id]

    with session_factory() as db:
        events = db.execute(
            select(OutboxEvent).where(OutboxEvent.event_type == "wallet.exchange.completed")
        ).scalars().all()
    assert len(events) == 1
    assert events[0].payload["payload"]["seller_id"] == seller


def test_exchange_on_sold_listing_writes_nothing(ledger, make_account, session_factory):
    seller = make_account()
    buyer = make_account(balance=500)
    late_buyer = make_account(balance=900)
    listing = ledger.create_listing(seller, "Pareo", 500)
    ledger.exchange(buyer, listing.listing_id)
    before = count_transactions(session_factory)

    with pytest.raises(ListingUnavailable):
        ledger.exchange(late_buyer, listing.listing_id)

    assert count_transactions(session_factory) == before
    assert ledger.get_balance(late_buyer) == 900


def test_exchange_rejections_leave_listing_active(ledger, make_account):
    seller = make_account(balance=1000)
    poor_buyer = make_account(balance=499)
    listing = ledger.create_listing(seller, "Umete bowl", 500)

    with pytest.raises(InvalidArgument):
        ledger.exchange(seller, listing.listing_id)
    with pytest.raises(InsufficientFunds):
        ledger.exchange(poor_buyer, listing.listing_id)
    with pytest.raises(ListingUnavailable):
        ledger.exchange(poor_buyer, "no-such-listing")

    assert [item.listing_id for item in ledger.list_listings()] == [listing.listing_id]
    assert ledger.get_balance(poor_buyer) == 499
    assert ledger.get_balance(seller) == 1000


def test_archived_listing_cannot_be_bought(ledger, make_account):
    seller = make_account()
    other = make_account(balance=100)
    listing = ledger.create_listing(seller, "Shell necklace", 50)

    with pytest.raises(PermissionDenied):
        ledger.archive_listing(other, listing.listing_id)
    assert ledger.archive_listing(seller, listing.listing_id).status == "archived"
    with pytest.raises(ListingUnavailable):
        ledger.exchange(other, listing.listing_id)


def test_create_listing_validation(ledger, make_account):
    seller = make_account()
    with pytest.raises(InvalidArgument):
        ledger.create_listing(seller, "Free", 0)
    with pytest.raises(InvalidArgument):
        ledger.create_listing(seller, "", 10)
    with pytest.raises(AccountNotFound):
        ledger.create_listing("ghost", "Ghost item", 10)


def test_admin_credit_requires_admin(ledger, make_account):
    admin = make_account(role="admin")
    user = make_account()
    target = make_account()

    with pytest.raises(PermissionDenied):
        ledger.admin_credit(user, target, 100, "bonus")
    row = ledger.admin_credit(admin, target, 100, "bonus")

    assert row.type == "credit"
    assert row.from_account_id == admin
    assert ledger.get_balance(target) == 100


def test_open_account_rejects_duplicates_and_bad_roles(ledger):
    ledger.open_account("Hina@Example.com")
    with pytest.raises(InvalidArgument):
        ledger.open_account("hina@example.com")
    with pytest.raises(InvalidArgument):
        ledger.open_account("teva@example.com", role="owner")
    assert ledger.get_account_by_email("HINA@example.com").role == "user"


def test_history_is_paginated_newest_first(ledger, make_account):
    a = make_account(balance=1000)
    b = make_account()
    last = None
    for amount in (10, 20, 30):
        last = ledger.transfer(a, b, amount, f"transfer {amount}")

    first_page = ledger.list_transactions(a, page=1, page_size=2)
    second_page = ledger.list_transactions(a, page=2, page_size=2)

    assert first_page["total"] == 4
    assert first_page["total_pages"] == 2
    assert first_page["has_next"] is True and first_page["has_prev"] is False
    assert first_page["items"][0].transaction_id == last.transaction_id
    assert second_page["has_next"] is False
    assert second_page["items"][-1].description == "opening balance"
    # B sees only the credit side of each transfer.
    assert {row.type for row in ledger.list_transactions(b)["items"]} == {"credit"}


def test_history_shows_exchange_to_both_parties(ledger, make_account):
    seller = make_account()
    buyer = make_account(balance=100)
    listing = ledger.create_listing(seller, "Ukulele", 80)
    tx = ledger.exchange(buyer, listing.listing_id)

    seller_items = ledger.list_transactions(seller)["items"]
    assert [row.transaction_id for row in seller_items] == [tx.transaction_id]
    assert tx.transaction_id in {row.transaction_id for row in ledger.list_transactions(buyer)["items"]}


def test_reconciliation_report_is_clean(ledger, make_account):
    a = make_account(balance=500)
    b = make_account(balance=500)
    ledger.transfer(a, b, 125, "dinner")
    ledger.transfer(b, a, 40, "coffee")

    report = ledger.reconciliation_report()

    assert report["imbalanced_count"] == 0
    assert report["snapshot_mismatches"] == []
    assert report["balance_mismatches"] == []
    assert report["groups_checked"] == 4


def test_concurrent_exchanges_sell_listing_once(ledger, make_account, session_factory):
    """Two buyers race for one 300-credit listing: one buys it, the other sees it gone."""

    seller = make_account()
    buyers = [make_account(balance=500), make_account(balance=500)]
    listing = ledger.create_listing(seller, "Umete bowl", 300)
    barrier = threading.Barrier(len(buyers))
    outcomes = []

    def attempt(buyer):
        barrier.wait()
        try:
            ledger.exchange(buyer, listing.listing_id)
            outcomes.append("ok")
        except ListingUnavailable:
            outcomes.append("unavailable")

    threads = [threading.Thread(target=attempt, args=(buyer,)) for buyer in buyers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["ok", "unavailable"]
    assert ledger.get_balance(seller) == 300
    assert sorted(ledger.get_balance(b) for b in buyers) == [200, 500]
    with session_factory() as db:
        exchanges = db.execute(select(Transaction).where(Transaction.type == "exchange")).scalars().all()
    assert [row.listing_id for row in exchanges] == [listing.listing_id]


def test_unit_of_work_maps_lost_storage_and_rolls_back(session_factory):
    with pytest.raises(StorageUnavailable) as excinfo:
        with unit_of_work(session_factory) as db:
            db.add(Account(email="half-written@example.com", balance=0))
            db.flush()
            raise OperationalError("INSERT INTO accounts", {}, Exception("database is locked"))

    assert excinfo.value.context["reason"] == "OperationalError"
    with session_factory() as db:
        assert db.execute(select(Account).where(Account.email == "half-written@example.com")).first() is None


def test_transfer_during_storage_outage_leaves_no_partial_rows(ledger, make_account, session_factory, monkeypatch):
    """Postings flush before the outbox insert fails: neither survives."""

    a = make_account(balance=500)
    b = make_account()
    rows_before = count_transactions(session_factory)

    def lost_connection(*args, **kwargs):
        raise OperationalError("INSERT INTO outbox_events", {}, Exception("server closed the connection"))

    monkeypatch.setattr("nunaa.services.wallet.service.enqueue_event", lost_connection)

    with pytest.raises(StorageUnavailable):
        ledger.transfer(a, b, 200, "during outage")

    assert (ledger.get_balance(a), ledger.get_balance(b)) == (500, 0)
    assert count_transactions(session_factory) == rows_before


def test_flush_maps_only_the_balance_check(ledger, make_account, session_factory):
    account_id = make_account(balance=10)

    with session_factory() as db:
        db.get(Account, account_id).balance = -1
        with pytest.raises(InsufficientFunds):
            ledger._flush(db)

    with session_factory() as db:
        db.add(
            Transaction(
                correlation_id="orphan",
                type="credit",
                account_id="ghost",
                amount=5,
                balance_before=0,
                balance_after=5,
                to_account_id="ghost",
            )
        )
        with pytest.raises(IntegrityError):
            ledger._flush(db)

    assert ledger.get_balance(account_id) == 10


def test_listing_page_is_capped(ledger, make_account, monkeypatch):
    seller = make_account()
    for n in range(3):
        ledger.create_listing(seller, f"Basket {n}", 10 + n)
    monkeypatch.setattr(settings, "list_limit_max", 2)

    assert len(ledger.list_listings(limit=10_000)) == 2
    assert len(ledger.list_listings(limit=0)) == 1


def test_reconciliation_report_flags_balance_without_ledger_rows(ledger, make_account, session_factory):
    seller = make_account()
    buyer = make_account(balance=400)
    tampered = make_account(balance=100)
    ledger.exchange(buyer, ledger.create_listing(seller, "Siapo", 150).listing_id)
    with session_factory() as db:
        db.get(Account, tampered).balance = 1_000
        db.commit()

    report = ledger.reconciliation_report()

    assert report["balance_mismatches"] == [{"account_id": tampered, "balance": 1_000, "expected": 100}]
