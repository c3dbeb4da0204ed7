"""Referral codes, referral links and rewards on paid access."""

import secrets
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from nunaa.common.config import settings
from nunaa.common.db import unit_of_work
from nunaa.common.errors import InvalidArgument, StorageUnavailable
from nunaa.common.events import EventEnvelope, consume_forever
from nunaa.common.logging import logger
from nunaa.common.metrics import referral_rewards_total
from nunaa.common.outbox import inbox_seen, mark_inbox
from nunaa.services.referral.models import Referral
from nunaa.services.wallet.models import Account
from nunaa.services.wallet.service import LedgerService

CODE_ATTEMPTS = 10
ACCESS_GRANTED_TOPIC = "billing.access.granted"


class ReferralService:
    """Consumes `billing.access.granted` and rewards the referrer once."""

    def __init__(self, session_factory, ledger: LedgerService | None = None, service_name: str = "referral") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.ledger = ledger or LedgerService(session_factory, service_name=service_name)

    def get_or_create_code(self, account_id: str) -> str:
        """Stable 8-character code; generated on first request."""

        with unit_of_work(self.session_factory) as db:
            account = self.ledger.lock_accounts(db, account_id)[account_id]
            if account.referral_code:
                return account.referral_code
            for _ in range(CODE_ATTEMPTS):
                code = secrets.token_hex(4).upper()
                taken = db.execute(select(Account.account_id).where(Account.referral_code == code)).first()
                if not taken:
                    account.referral_code = code
                    logger.info("referral_code_created account_id=%s", account_id)
                    return code
        raise StorageUnavailable("could not allocate a unique referral code, retry later")

    def _find_referral(self, db, referred_id: str) -> Referral | None:
        return db.execute(select(Referral).where(Referral.referred_id == referred_id)).scalar_one_or_none()

    def register(self, referral_code: str, referred_account_id: str) -> tuple[Referral, bool]:
        """Attach a new account to the owner of `referral_code`; returns `(referral, created)`."""

        code = (referral_code or "").strip().upper()
        if not code:
            raise InvalidArgument("referral_code is required")
        with unit_of_work(self.session_factory) as db:
            referrer = db.execute(select(Account).where(Account.referral_code == code)).scalar_one_or_none()
            if referrer is None or not referrer.is_active:
                raise InvalidArgument("Unknown referral code", referral_code=code)
            if referrer.account_id == referred_account_id:
                raise InvalidArgument("An account cannot refer itself")
            self.ledger.require_account(db, referred_account_id)
            existing = self._find_referral(db, referred_account_id)
            if existing is not None:
                return existing, False
            referral = Referral(referrer_id=referrer.account_id, referred_id=referred_account_id, status="registered")
            try:
                with db.begin_nested():
                    db.add(referral)
            except IntegrityError:
                existing = self._find_referral(db, referred_account_id)
                if existing is None:
                    raise
                return existing, False
        logger.info("referral_registered referrer=%s referred=%s", referral.referrer_id, referred_account_id)
        return referral, True

    def reward_referrer(self, event: EventEnvelope) -> bool:
        """Credit the referrer of the account that just gained paid access.

        The inbox row and the reward commit together; the `registered` status
        check under lock keeps the reward single even without the inbox.
        """

        referred_id = event.payload["account_id"]
        with unit_of_work(self.session_factory) as db:
            if inbox_seen(db, event.event_id, self.service_name, ACCESS_GRANTED_TOPIC):
                return False
            mark_inbox(db, event.event_id, self.service_name)
            referral = db.execute(
                select(Referral)
                .where(Referral.referred_id == referred_id, Referral.status == "registered")
                .with_for_update()
            ).scalar_one_or_none()
            if referral is None:
                return False
            referrer = db.get(Account, referral.referrer_id)
            if referrer is None or not referrer.is_active:
                logger.warning("referral_reward_skipped referral_id=%s reason=referrer_inactive", referral.referral_id)
                return False
            referrer = self.ledger.lock_accounts(db, referral.referrer_id)[referral.referrer_id]
            self.ledger.post_credit(
                db,
                referrer,
                settings.referral_reward_credits,
                "Referral reward",
                correlation_id=referral.referral_id,
            )
            referral.status = "rewarded"
            referral.rewarded_at = datetime.now(timezone.utc)
        referral_rewards_total.labels(service=self.service_name).inc()
        logger.info(
            "referral_rewarded referral_id=%s referrer=%s referred=%s credits=%s",
            referral.referral_id,
            referral.referrer_id,
            referred_id,
            settings.referral_reward_credits,
        )
        return True

    async def handle_access_granted(self, event: EventEnvelope) -> None:
        self.reward_referrer(event)

    def list_referrals(self, account_id: str) -> list[dict]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Referral, Account.email)
                .join(Account, Account.account_id == Referral.referred_id)
                .where(Referral.referrer_id == account_id)
                .order_by(Referral.created_at.desc())
            ).all()
        return [
            {
                "referral_id": referral.referral_id,
                "referred_id": referral.referred_id,
                "referred_email": email,
                "status": referral.status,
                "rewarded_at": referral.rewarded_at,
                "created_at": referral.created_at,
            }
            for referral, email in rows
        ]

    def stats(self, account_id: str) -> dict:
        with self.session_factory() as db:
            account = self.ledger.require_account(db, account_id)
            counts = dict(
                db.execute(
                    select(Referral.status, func.count())
                    .where(Referral.referrer_id == account_id)
                    .group_by(Referral.status)
                ).all()
            )
        rewarded = counts.get("rewarded", 0)
        return {
            "referral_code": account.referral_code,
            "total": sum(counts.values()),
            "registered": counts.get("registered", 0),
            "rewarded": rewarded,
            "rewards_earned": rewarded * settings.referral_reward_credits,
        }

    async def start_consumers(self) -> None:
        """Start Kafka consumer for access grants."""

        await consume_forever(ACCESS_GRANTED_TOPIC, "referral-access-granted", self.handle_access_granted)
