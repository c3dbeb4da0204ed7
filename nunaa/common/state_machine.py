"""Status transitions for payment records and legacy verifications."""

from nunaa.common.errors import AlreadyFinalized, InvalidArgument

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "cancelled", "failed"},
    "paid": set(),
    "cancelled": set(),
    "failed": set(),
}

LEGACY_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "rejected"},
    "confirmed": set(),
    "rejected": set(),
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = PAYMENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed.

    Leaving a terminal state raises `AlreadyFinalized` so reconcilers can treat
    replays as no-ops; anything else is a caller error.
    """

    if current not in transitions:
        raise InvalidArgument(f"Unknown status: {current}")
    if not transitions[current]:
        raise AlreadyFinalized(f"Record already finalized with status={current}", status=current)
    if new not in transitions[current]:
        raise InvalidArgument(f"Invalid transition: {current} -> {new}")

# A card checkout the platform cancelled in favour of a newer one, then paid at
# the provider anyway; only an administrator takes this path.
SUPERSEDED_CARD_TRANSITIONS: dict[str, set[str]] = {
    "cancelled": {"paid"},
    "paid": set(),
}
