"""Entitlement reads, payment intents and the payment status reconciler.

Payments never touch `Account.role`. A paid or confirmed record extends
`paid_access_expires_at` and the effective tier is computed on read by
`nunaa.common.entitlements.resolve_tier`.
"""

import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from nunaa.common.config import settings
from nunaa.common.db import unit_of_work
from nunaa.common.entitlements import (
    LEGACY_CHANNELS,
    LEGACY_PACK,
    AccessTier,
    Pack,
    Role,
    get_pack,
    is_staff,
    paid_access_active,
    resolve_tier,
    role_at_least,
)
from nunaa.common.errors import (
    AlreadyFinalized,
    InvalidArgument,
    PaymentNotFound,
    PermissionDenied,
    StorageUnavailable,
)
from nunaa.common.events import EventEnvelope
from nunaa.common.logging import logger
from nunaa.common.metrics import access_grants_total, payment_transitions_total
from nunaa.common.outbox import OutboxPublisher, enqueue_event
from nunaa.common.state_machine import (
    LEGACY_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    SUPERSEDED_CARD_TRANSITIONS,
    validate_transition,
)
from nunaa.services.billing.models import LegacyVerification, PaymentRecord
from nunaa.services.wallet.models import Account
from nunaa.services.wallet.service import LedgerService

REFERENCE_ATTEMPTS = 5
CARD_EVENT_TARGETS = {
    "checkout.session.completed": "paid",
    "checkout.session.expired": "cancelled",
    "payment.failed": "failed",
}
PAYMENT_DETAIL_FIELDS = (
    "bank_transaction_id",
    "payer_name",
    "provider_payment_intent_id",
    "provider_customer_id",
)


def make_reference_id(account_id: str, pack: Pack) -> str:
    """Human-quotable bank transfer reference, e.g. `NH-3F2A91C0-TO-9B1C44E2`."""

    prefix = account_id.replace("-", "")[:8].upper()
    return f"NH-{prefix}-{pack.reference_tag}-{secrets.token_hex(4).upper()}"


def next_occurrence(day: int, month: int, now: datetime | None = None) -> datetime:
    """End of the next `day`/`month` strictly after `now` (this year or next)."""

    now = now or datetime.now(timezone.utc)
    for year in (now.year, now.year + 1):
        try:
            candidate = datetime(year, month, day, 23, 59, 59, tzinfo=timezone.utc)
        except ValueError:
            raise InvalidArgument(f"Invalid expiration date: day={day} month={month}") from None
        if candidate > now:
            return candidate
    raise InvalidArgument(f"Invalid expiration date: day={day} month={month}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime | None) -> datetime | None:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class BillingService:
    """Owns payment records, legacy verifications and access grants."""

    def __init__(self, session_factory, ledger: LedgerService | None = None, service_name: str = "billing") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.ledger = ledger or LedgerService(session_factory, service_name=service_name)
        self.publisher = OutboxPublisher(session_factory, service_name)

    # -- entitlement reads ----------------------------------------------

    def _grant_records(self, db, account_id: str) -> list:
        payments = db.execute(
            select(PaymentRecord).where(PaymentRecord.account_id == account_id, PaymentRecord.status == "paid")
        ).scalars()
        legacy = db.execute(
            select(LegacyVerification).where(
                LegacyVerification.account_id == account_id,
                LegacyVerification.status == "confirmed",
            )
        ).scalars()
        return [*payments, *legacy]

    def resolve_account_tier(self, account_id: str, now: datetime | None = None) -> AccessTier:
        with self.session_factory() as db:
            account = self.ledger.require_account(db, account_id)
            return resolve_tier(account, self._grant_records(db, account_id), now)

    def account_has_access(self, account_id: str, required: "AccessTier | str") -> bool:
        return self.resolve_account_tier(account_id) >= AccessTier.parse(required)

    def access_summary(self, account_id: str) -> dict:
        with self.session_factory() as db:
            account = self.ledger.require_account(db, account_id)
            tier = resolve_tier(account, self._grant_records(db, account_id))
        return {
            "account_id": account_id,
            "role": account.role,
            "tier": tier.label,
            "is_staff": is_staff(account.role),
            "paid_access_expires_at": account.paid_access_expires_at,
            "paid_access_active": account.paid_access_expires_at is not None
            and paid_access_active(account.paid_access_expires_at),
        }

    def _require_admin(self, admin_id: str) -> Account:
        admin = self.ledger.get_account(admin_id)
        if not role_at_least(admin.role, Role.ADMIN):
            raise PermissionDenied("Admin role required", account_id=admin_id)
        return admin

    def set_role(self, admin_id: str, account_id: str, role: str) -> Account:
        """Role management; only a superadmin may hand out admin roles."""

        new_role = Role.parse(role)
        admin = self._require_admin(admin_id)
        if new_role in (Role.ADMIN, Role.SUPERADMIN) and not role_at_least(admin.role, Role.SUPERADMIN):
            raise PermissionDenied("Superadmin role required", account_id=admin_id)
        with unit_of_work(self.session_factory) as db:
            account = self.ledger.lock_accounts(db, account_id)[account_id]
            previous = account.role
            account.role = new_role.value
        logger.info("role_changed account_id=%s from=%s to=%s by=%s", account_id, previous, new_role.value, admin_id)
        return account

    # -- intents ------------------------------------------------------------

    def _pending_payment(self, db, account_id: str, kind: str) -> PaymentRecord | None:
        return db.execute(
            select(PaymentRecord)
            .where(
                PaymentRecord.account_id == account_id,
                PaymentRecord.kind == kind,
                PaymentRecord.status == "pending",
            )
            .with_for_update()
        ).scalar_one_or_none()

    def create_or_reuse_bank_transfer_intent(self, account_id: str, pack: str) -> tuple[PaymentRecord, bool]:
        """Return the account's pending bank transfer, or open one for `pack`.

        A pending record for another pack is reused as is; the caller gets
        `(record, reused)`.
        """

        pack_info = get_pack(pack)
        for attempt in range(1, REFERENCE_ATTEMPTS + 1):
            with unit_of_work(self.session_factory) as db:
                self.ledger.require_account(db, account_id)
                existing = self._pending_payment(db, account_id, "bank_transfer")
                if existing is not None:
                    return existing, True
                record = PaymentRecord(
                    account_id=account_id,
                    kind="bank_transfer",
                    pack=pack_info.code,
                    amount_due=pack_info.amount_due,
                    status="pending",
                    reference_id=make_reference_id(account_id, pack_info),
                )
                try:
                    with db.begin_nested():
                        db.add(record)
                except IntegrityError:
                    existing = self._pending_payment(db, account_id, "bank_transfer")
                    if existing is not None:
                        return existing, True
                    logger.warning("bank_transfer_reference_collision attempt=%s/%s", attempt, REFERENCE_ATTEMPTS)
                    continue
            logger.info(
                "bank_transfer_intent_created payment_id=%s account_id=%s pack=%s reference=%s",
                record.payment_id,
                account_id,
                pack_info.code,
                record.reference_id,
            )
            return record, False
        raise StorageUnavailable("could not allocate a unique transfer reference, retry later")

    def open_card_checkout(self, account_id: str, pack: str, provider_session_id: str) -> PaymentRecord:
        """Record a provider-hosted checkout session; an older pending one is cancelled."""

        pack_info = get_pack(pack)
        if not provider_session_id:
            raise InvalidArgument("provider_session_id is required")
        try:
            with unit_of_work(self.session_factory) as db:
                self.ledger.require_account(db, account_id)
                existing = self._pending_payment(db, account_id, "card")
                if existing is not None:
                    if existing.provider_session_id == provider_session_id:
                        return existing
                    self._transition(existing, "cancelled", PAYMENT_TRANSITIONS, "card")
                    existing.cancel_reason = "superseded"
                    db.flush()
                record = PaymentRecord(
                    account_id=account_id,
                    kind="card",
                    pack=pack_info.code,
                    amount_due=pack_info.amount_due,
                    status="pending",
                    provider_session_id=provider_session_id,
                )
                db.add(record)
        except IntegrityError as exc:
            raise InvalidArgument("checkout session already recorded", provider_session_id=provider_session_id) from exc
        logger.info("card_checkout_opened payment_id=%s account_id=%s pack=%s", record.payment_id, account_id, pack)
        return record

    def request_bank_transfer_verification(self, account_id: str, payment_id: str | None = None) -> dict:
        """Payer asks an administrator to confirm a transfer the bank feed missed."""

        with unit_of_work(self.session_factory) as db:
            record = self._pending_payment(db, account_id, "bank_transfer")
            if record is None or (payment_id is not None and record.payment_id != payment_id):
                raise PaymentNotFound("No pending bank transfer for this account", account_id=account_id)
            already_requested = record.needs_verification
            record.needs_verification = True
        if not already_requested:
            logger.info("bank_transfer_verification_requested payment_id=%s", record.payment_id)
        return {"payment_id": record.payment_id, "already_requested": already_requested}

    def request_legacy_verification(self, account_id: str, paid_with: str) -> tuple[LegacyVerification, bool]:
        """Open a legacy payment claim; returns `(record, already_requested)`."""

        if paid_with not in LEGACY_CHANNELS:
            raise InvalidArgument(
                f"paid_with must be one of {', '.join(sorted(LEGACY_CHANNELS))}",
                paid_with=paid_with,
            )
        with unit_of_work(self.session_factory) as db:
            self.ledger.require_account(db, account_id)
            existing = self._active_legacy(db, account_id)
            if existing is not None:
                return existing, True
            record = LegacyVerification(
                account_id=account_id,
                paid_with=paid_with,
                pack=LEGACY_PACK,
                status="pending",
            )
            try:
                with db.begin_nested():
                    db.add(record)
            except IntegrityError:
                existing = self._active_legacy(db, account_id)
                if existing is None:
                    raise
                return existing, True
        logger.info(
            "legacy_verification_requested verification_id=%s account_id=%s paid_with=%s",
            record.verification_id,
            account_id,
            paid_with,
        )
        return record, False

    def _active_legacy(self, db, account_id: str) -> LegacyVerification | None:
        return db.execute(
            select(LegacyVerification).where(
                LegacyVerification.account_id == account_id,
                LegacyVerification.status.in_(("pending", "confirmed")),
            )
        ).scalar_one_or_none()

    def latest_payment(self, account_id: str, kind: str = "bank_transfer") -> PaymentRecord | None:
        with self.session_factory() as db:
            return db.execute(
                select(PaymentRecord)
                .where(PaymentRecord.account_id == account_id, PaymentRecord.kind == kind)
                .order_by(PaymentRecord.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def latest_legacy_verification(self, account_id: str) -> LegacyVerification | None:
        with self.session_factory() as db:
            return db.execute(
                select(LegacyVerification)
                .where(LegacyVerification.account_id == account_id)
                .order_by(LegacyVerification.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_pending_bank_verifications(self, limit: int = 100) -> list[PaymentRecord]:
        limit = min(max(1, limit), settings.list_limit_max)
        with self.session_factory() as db:
            return (
                db.execute(
                    select(PaymentRecord)
                    .where(
                        PaymentRecord.kind == "bank_transfer",
                        PaymentRecord.status == "pending",
                        PaymentRecord.needs_verification.is_(True),
                    )
                    .order_by(PaymentRecord.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def list_pending_card_verifications(self, limit: int = 100) -> list[PaymentRecord]:
        """Superseded checkouts the payer completed anyway, oldest first."""

        limit = min(max(1, limit), settings.list_limit_max)
        with self.session_factory() as db:
            return (
                db.execute(
                    select(PaymentRecord)
                    .where(
                        PaymentRecord.kind == "card",
                        PaymentRecord.status == "cancelled",
                        PaymentRecord.needs_verification.is_(True),
                    )
                    .order_by(PaymentRecord.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def list_pending_legacy_verifications(self, limit: int = 100) -> list[LegacyVerification]:
        limit = min(max(1, limit), settings.list_limit_max)
        with self.session_factory() as db:
            return (
                db.execute(
                    select(LegacyVerification)
                    .where(LegacyVerification.status == "pending")
                    .order_by(LegacyVerification.created_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    # -- reconciler ---------------------------------------------------------

    def _transition(self, record, new_status: str, transitions: dict[str, set[str]], kind: str) -> None:
        validate_transition(record.status, new_status, transitions)
        record.status = new_status
        payment_transitions_total.labels(service=self.service_name, kind=kind, to_status=new_status).inc()

    def _lock_payment(self, db, payment_id: str) -> PaymentRecord:
        record = db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.payment_id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise PaymentNotFound("Payment record not found", payment_id=payment_id)
        return record

    def _lock_legacy(self, db, verification_id: str) -> LegacyVerification:
        record = db.execute(
            select(LegacyVerification)
            .where(LegacyVerification.verification_id == verification_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise PaymentNotFound("Legacy verification not found", verification_id=verification_id)
        return record

    def _grant_access(
        self,
        db,
        account_id: str,
        pack: str,
        source: str,
        aggregate_id: str,
        credit_pack: str | None,
        expires_at: datetime | None = None,
    ) -> datetime:
        """Extend paid access, credit signup credits once and announce the grant."""

        account = self.ledger.lock_accounts(db, account_id)[account_id]
        now = _utcnow()
        if expires_at is None:
            current = _aware(account.paid_access_expires_at)
            base = current if current is not None and current > now else now
            expires_at = base + timedelta(days=settings.paid_access_days)
        account.paid_access_expires_at = expires_at

        credits = 0
        if credit_pack is not None:
            signup = get_pack(credit_pack)
            credits = signup.signup_credits
            self.ledger.post_credit(db, account, credits, f"Inscription {signup.label}", correlation_id=aggregate_id)

        enqueue_event(
            db,
            self.service_name,
            "access",
            EventEnvelope(
                event_type="billing.access.granted",
                aggregate_id=aggregate_id,
                payload={
                    "account_id": account_id,
                    "pack": pack,
                    "tier": get_pack(pack).tier.label,
                    "source": source,
                    "credits": credits,
                    "paid_access_expires_at": expires_at.isoformat(),
                },
            ),
        )
        access_grants_total.labels(service=self.service_name, source=source, pack=pack).inc()
        return expires_at

    def mark_paid(self, payment_id: str, paid_at: datetime | None = None, **details) -> PaymentRecord:
        """Move a pending payment to `paid` and grant access; replays raise `AlreadyFinalized`."""

        unknown = set(details) - set(PAYMENT_DETAIL_FIELDS)
        if unknown:
            raise InvalidArgument(f"Unknown payment details: {', '.join(sorted(unknown))}")
        with unit_of_work(self.session_factory) as db:
            record = self._lock_payment(db, payment_id)
            self._transition(record, "paid", PAYMENT_TRANSITIONS, record.kind)
            for field, value in details.items():
                if value is not None:
                    setattr(record, field, value)
            self._settle(db, record, paid_at)
        logger.info(
            "payment_marked_paid payment_id=%s account_id=%s kind=%s pack=%s",
            payment_id,
            record.account_id,
            record.kind,
            record.pack,
        )
        return record

    def _settle(self, db, record: PaymentRecord, paid_at: datetime | None) -> None:
        record.paid_at = paid_at or _utcnow()
        record.needs_verification = False
        self._grant_access(
            db,
            record.account_id,
            record.pack,
            record.kind,
            record.payment_id,
            credit_pack=None if record.credit_granted else record.pack,
        )
        record.credit_granted = True

    def _finish_unpaid(self, payment_id: str, new_status: str, reason: str | None = None) -> PaymentRecord:
        with unit_of_work(self.session_factory) as db:
            record = self._lock_payment(db, payment_id)
            self._transition(record, new_status, PAYMENT_TRANSITIONS, record.kind)
            if new_status == "cancelled":
                record.cancel_reason = reason
        logger.info("payment_closed payment_id=%s status=%s reason=%s", payment_id, new_status, reason)
        return record

    def mark_cancelled(self, payment_id: str, reason: str | None = None) -> PaymentRecord:
        return self._finish_unpaid(payment_id, "cancelled", reason)

    def mark_failed(self, payment_id: str) -> PaymentRecord:
        return self._finish_unpaid(payment_id, "failed")

    def process_bank_transfer_webhook(
        self,
        reference_id: str,
        amount: int,
        bank_transaction_id: str,
        payer_name: str | None = None,
        paid_at: datetime | None = None,
    ) -> dict:
        """Bank feed notification for a quoted reference; idempotent per reference."""

        with self.session_factory() as db:
            record = db.execute(
                select(PaymentRecord).where(
                    PaymentRecord.reference_id == reference_id,
                    PaymentRecord.kind == "bank_transfer",
                )
            ).scalar_one_or_none()
        if record is None:
            raise PaymentNotFound("Unknown transfer reference", reference_id=reference_id)
        if record.status == "paid":
            return {"ok": True, "already_processed": True, "payment_id": record.payment_id}
        if amount != record.amount_due:
            raise InvalidArgument(
                "Transferred amount does not match the amount due",
                reference_id=reference_id,
                expected=record.amount_due,
                received=amount,
            )
        try:
            self.mark_paid(
                record.payment_id,
                paid_at,
                bank_transaction_id=bank_transaction_id,
                payer_name=payer_name,
            )
        except AlreadyFinalized as exc:
            if exc.context.get("status") != "paid":
                raise
            return {"ok": True, "already_processed": True, "payment_id": record.payment_id}
        return {"ok": True, "already_processed": False, "payment_id": record.payment_id}

    def process_card_event(
        self,
        event_type: str,
        provider_session_id: str,
        payment_intent_id: str | None = None,
        customer_id: str | None = None,
    ) -> dict:
        """Apply a card provider notification (webhook or poll result)."""

        target = CARD_EVENT_TARGETS.get(event_type)
        if target is None:
            raise InvalidArgument(f"Unsupported card event: {event_type}", event_type=event_type)
        with self.session_factory() as db:
            record = db.execute(
                select(PaymentRecord).where(PaymentRecord.provider_session_id == provider_session_id)
            ).scalar_one_or_none()
        if record is None:
            raise PaymentNotFound("Unknown checkout session", provider_session_id=provider_session_id)
        try:
            if target == "paid":
                record = self.mark_paid(
                    record.payment_id,
                    provider_payment_intent_id=payment_intent_id,
                    provider_customer_id=customer_id,
                )
            else:
                reason = "expired" if target == "cancelled" else None
                record = self._finish_unpaid(record.payment_id, target, reason)
        except AlreadyFinalized as exc:
            if target == "paid" and exc.context.get("status") == "cancelled":
                return self._flag_superseded_completion(record.payment_id, payment_intent_id, customer_id)
            return {
                "ok": True,
                "already_processed": True,
                "payment_id": record.payment_id,
                "status": exc.context.get("status"),
                "needs_verification": record.needs_verification,
            }
        return {
            "ok": True,
            "already_processed": False,
            "payment_id": record.payment_id,
            "status": record.status,
            "needs_verification": record.needs_verification,
        }

    def _flag_superseded_completion(
        self, payment_id: str, payment_intent_id: str | None, customer_id: str | None
    ) -> dict:
        """The payer completed a checkout that a newer one had replaced.

        The provider charged them, so the record keeps the provider ids and
        joins the ops queue served by `confirm_card_payment`.
        """

        with unit_of_work(self.session_factory) as db:
            record = self._lock_payment(db, payment_id)
            flag = record.cancel_reason == "superseded" and not record.needs_verification
            if flag:
                record.needs_verification = True
                record.provider_payment_intent_id = payment_intent_id or record.provider_payment_intent_id
                record.provider_customer_id = customer_id or record.provider_customer_id
        if flag:
            logger.warning(
                "superseded_checkout_completed payment_id=%s account_id=%s payment_intent_id=%s",
                payment_id,
                record.account_id,
                payment_intent_id,
            )
        return {
            "ok": True,
            "already_processed": not flag,
            "payment_id": payment_id,
            "status": record.status,
            "needs_verification": record.needs_verification,
        }

    def confirm_card_payment(self, payment_id: str, admin_id: str) -> PaymentRecord:
        """Grant access for a superseded checkout that the provider did charge."""

        self._require_admin(admin_id)
        with unit_of_work(self.session_factory) as db:
            record = self._lock_payment(db, payment_id)
            if record.kind != "card":
                raise PaymentNotFound("Card payment not found", payment_id=payment_id)
            if record.status == "cancelled" and not record.needs_verification:
                raise InvalidArgument("Card payment is not awaiting verification", payment_id=payment_id)
            self._transition(record, "paid", SUPERSEDED_CARD_TRANSITIONS, "card")
            self._settle(db, record, None)
        logger.info("card_payment_confirmed payment_id=%s by=%s", payment_id, admin_id)
        return record

    def confirm_bank_transfer(self, payment_id: str, admin_id: str) -> PaymentRecord:
        self._require_admin(admin_id)
        with self.session_factory() as db:
            record = db.get(PaymentRecord, payment_id)
        if record is None or record.kind != "bank_transfer":
            raise PaymentNotFound("Bank transfer not found", payment_id=payment_id)
        record = self.mark_paid(payment_id)
        logger.info("bank_transfer_confirmed payment_id=%s by=%s", payment_id, admin_id)
        return record

    def mark_confirmed(
        self,
        verification_id: str,
        admin_id: str,
        upgrade_to_premium: bool = False,
        expiration_day: int | None = None,
        expiration_month: int | None = None,
    ) -> LegacyVerification:
        """Accept a legacy claim: access for the chosen pack plus Te Ohi signup credits."""

        self._require_admin(admin_id)
        if (expiration_day is None) != (expiration_month is None):
            raise InvalidArgument("expiration_day and expiration_month go together")
        expires_at = None
        if expiration_day is not None:
            expires_at = next_occurrence(expiration_day, expiration_month)

        with unit_of_work(self.session_factory) as db:
            record = self._lock_legacy(db, verification_id)
            self._transition(record, "confirmed", LEGACY_TRANSITIONS, "legacy")
            record.reviewed_by = admin_id
            record.reviewed_at = _utcnow()
            if upgrade_to_premium:
                record.pack = "umete"
            self._grant_access(
                db,
                record.account_id,
                record.pack,
                "legacy",
                record.verification_id,
                credit_pack=None if record.credit_granted else LEGACY_PACK,
                expires_at=expires_at,
            )
            record.credit_granted = True
        logger.info(
            "legacy_verification_confirmed verification_id=%s account_id=%s pack=%s by=%s",
            verification_id,
            record.account_id,
            record.pack,
            admin_id,
        )
        return record

    def mark_rejected(self, verification_id: str, admin_id: str) -> LegacyVerification:
        self._require_admin(admin_id)
        with unit_of_work(self.session_factory) as db:
            record = self._lock_legacy(db, verification_id)
            self._transition(record, "rejected", LEGACY_TRANSITIONS, "legacy")
            record.reviewed_by = admin_id
            record.reviewed_at = _utcnow()
            enqueue_event(
                db,
                self.service_name,
                "legacy_verification",
                EventEnvelope(
                    event_type="billing.legacy.rejected",
                    aggregate_id=record.verification_id,
                    payload={"account_id": record.account_id, "paid_with": record.paid_with},
                ),
            )
        logger.info("legacy_verification_rejected verification_id=%s by=%s", verification_id, admin_id)
        return record
