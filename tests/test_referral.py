"""Referral codes, registration and the access-granted reward consumer."""

import asyncio
import re

import pytest
from sqlalchemy import select

from nunaa.common.errors import InvalidArgument
from nunaa.common.events import EventEnvelope
from nunaa.common.outbox import InboxEvent, OutboxEvent


def access_granted_events(session_factory, account_id: str) -> list[EventEnvelope]:
    with session_factory() as db:
        rows = db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.event_type == "billing.access.granted")
            .order_by(OutboxEvent.created_at)
        ).scalars().all()
    events = [EventEnvelope(**row.payload) for row in rows]
    return [event for event in events if event.payload["account_id"] == account_id]


def pay_teohi(billing, account_id: str) -> None:
    record, _ = billing.create_or_reuse_bank_transfer_intent(account_id, "teOhi")
    billing.mark_paid(record.payment_id)


def test_referral_code_is_stable(referrals, make_account):
    account = make_account()

    code = referrals.get_or_create_code(account)

    assert re.fullmatch(r"[0-9A-F]{8}", code)
    assert referrals.get_or_create_code(account) == code


def test_register_validation(referrals, make_account):
    referrer = make_account()
    code = referrals.get_or_create_code(referrer)

    with pytest.raises(InvalidArgument):
        referrals.register("NOPE1234", make_account())
    with pytest.raises(InvalidArgument):
        referrals.register("", make_account())
    with pytest.raises(InvalidArgument):
        referrals.register(code, referrer)


def test_register_is_idempotent(referrals, make_account):
    referrer = make_account()
    referred = make_account()
    code = referrals.get_or_create_code(referrer)

    referral, created = referrals.register(code.lower(), referred)
    again, created_again = referrals.register(code, referred)

    assert created is True
    assert created_again is False
    assert again.referral_id == referral.referral_id
    assert referral.status == "registered"


def test_paid_access_rewards_referrer_once(referrals, billing, ledger, make_account, session_factory):
    """The reward lands once even when the event is redelivered or re-emitted."""

    referrer = make_account()
    referred = make_account()
    referrals.register(referrals.get_or_create_code(referrer), referred)
    pay_teohi(billing, referred)
    [event] = access_granted_events(session_factory, referred)

    assert referrals.reward_referrer(event) is True
    assert referrals.reward_referrer(event) is False
    renewal = event.model_copy(update={"event_id": "renewal-event"})
    assert referrals.reward_referrer(renewal) is False

    assert ledger.get_balance(referrer) == 50
    history = ledger.list_transactions(referrer)["items"]
    assert [row.description for row in history] == ["Referral reward"]
    with session_factory() as db:
        consumed = db.execute(select(InboxEvent).where(InboxEvent.consumed_by_service == "referral")).scalars().all()
    assert {row.event_id for row in consumed} == {event.event_id, "renewal-event"}


def test_access_without_referral_is_ignored(referrals, billing, ledger, make_account, session_factory):
    account = make_account()
    pay_teohi(billing, account)
    [event] = access_granted_events(session_factory, account)

    assert referrals.reward_referrer(event) is False
    assert ledger.get_balance(account) == 50


def test_consumer_handler_and_stats(referrals, billing, make_account, session_factory):
    referrer = make_account()
    code = referrals.get_or_create_code(referrer)
    paying, waiting = make_account(), make_account()
    referrals.register(code, paying)
    referrals.register(code, waiting)
    pay_teohi(billing, paying)
    [event] = access_granted_events(session_factory, paying)

    asyncio.run(referrals.handle_access_granted(event))

    stats = referrals.stats(referrer)
    assert stats == {
        "referral_code": code,
        "total": 2,
        "registered": 1,
        "rewarded": 1,
        "rewards_earned": 50,
    }
    statuses = {item["referred_id"]: item["status"] for item in referrals.list_referrals(referrer)}
    assert statuses == {paying: "rewarded", waiting: "registered"}
