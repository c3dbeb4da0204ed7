"""Access tiers, roles and the pure entitlement resolver.

The tables below are built once at import and exposed read-only. Nothing in
this module touches the database: callers load the account and its payment
records and pass them in.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Iterable, Protocol

from nunaa.common.errors import InvalidArgument


class AccessTier(IntEnum):
    """Content access level; comparison follows the integer order."""

    PUBLIC = 0
    MEMBER = 1
    PREMIUM = 2
    VIP = 3

    @classmethod
    def parse(cls, value: "str | AccessTier") -> "AccessTier":
        if isinstance(value, AccessTier):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise InvalidArgument(f"Unknown access tier: {value}", value=value) from None

    @property
    def label(self) -> str:
        return self.name.lower()


class Role(str, Enum):
    GUEST = "guest"
    USER = "user"
    MEMBER = "member"
    PREMIUM = "premium"
    VIP = "vip"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @classmethod
    def parse(cls, value: str) -> "Role":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"Unknown role: {value}", value=value) from None


STAFF_ROLES = frozenset({Role.MODERATOR, Role.ADMIN, Role.SUPERADMIN})

ROLE_TIERS = MappingProxyType(
    {
        Role.GUEST: AccessTier.PUBLIC,
        Role.USER: AccessTier.PUBLIC,
        Role.MEMBER: AccessTier.MEMBER,
        Role.PREMIUM: AccessTier.PREMIUM,
        Role.VIP: AccessTier.VIP,
    }
)

# Authorization hierarchy for administrative actions.
ROLE_RANKS = MappingProxyType(
    {
        Role.SUPERADMIN: 100,
        Role.ADMIN: 80,
        Role.MODERATOR: 60,
        Role.VIP: 40,
        Role.PREMIUM: 30,
        Role.MEMBER: 20,
        Role.USER: 10,
        Role.GUEST: 0,
    }
)


@dataclass(frozen=True)
class Pack:
    code: str
    label: str
    amount_due: int
    tier: AccessTier
    signup_credits: int
    reference_tag: str


PACKS = MappingProxyType(
    {
        "teOhi": Pack("teOhi", "Te Ohi", 5000, AccessTier.MEMBER, 50, "TO"),
        "umete": Pack("umete", "Umete", 20000, AccessTier.PREMIUM, 100, "UM"),
    }
)
LEGACY_PACK = "teOhi"
LEGACY_CHANNELS = frozenset({"naho", "tamiga"})
GRANTING_STATUSES = frozenset({"paid", "confirmed"})


class HasRole(Protocol):
    role: str
    paid_access_expires_at: datetime | None


class GrantRecord(Protocol):
    status: str
    pack: str


def get_pack(code: str) -> Pack:
    try:
        return PACKS[code]
    except KeyError:
        raise InvalidArgument(f"Unknown pack: {code}", pack=code) from None


def _as_role(role) -> Role | None:
    try:
        return Role(role)
    except ValueError:
        return None


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def paid_access_active(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """No expiry recorded means payment grants are not time-limited."""

    if expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return _aware(expires_at) > _aware(now)


def granted_tier(record: GrantRecord) -> AccessTier | None:
    if record.status not in GRANTING_STATUSES:
        return None
    pack = PACKS.get(record.pack)
    return pack.tier if pack else None


def is_staff(role) -> bool:
    return _as_role(role) in STAFF_ROLES


def role_rank(role) -> int:
    parsed = _as_role(role)
    return ROLE_RANKS[parsed] if parsed else 0


def role_at_least(role, required: Role) -> bool:
    return role_rank(role) >= ROLE_RANKS[required]


def resolve_tier(
    account: HasRole,
    payment_records: Iterable[GrantRecord] = (),
    now: datetime | None = None,
) -> AccessTier:
    """Compute the effective access tier of `account`.

    Staff always get the top tier. Everyone else starts from the role table and
    is raised, never lowered, by paid or confirmed records while paid access
    has not expired.
    """

    role = _as_role(account.role)
    if role in STAFF_ROLES:
        return AccessTier.VIP
    tier = ROLE_TIERS.get(role, AccessTier.PUBLIC)
    if not paid_access_active(account.paid_access_expires_at, now):
        return tier
    for record in payment_records:
        granted = granted_tier(record)
        if granted is not None and granted > tier:
            tier = granted
    return tier


def has_access(
    account: HasRole,
    required: "AccessTier | str",
    payment_records: Iterable[GrantRecord] = (),
    now: datetime | None = None,
) -> bool:
    return resolve_tier(account, payment_records, now) >= AccessTier.parse(required)
