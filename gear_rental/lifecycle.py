"""Legal status transitions for a booking."""
from typing import Dict, FrozenSet

from .errors import IllegalTransition
from .models import BookingStatus, TERMINAL_STATUSES

INITIAL_STATUS = BookingStatus.PENDING

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.APPROVED, BookingStatus.REJECTED, BookingStatus.CANCELLED}),
    BookingStatus.APPROVED: frozenset({BookingStatus.CHECKED_OUT, BookingStatus.CANCELLED}),
    # Once the gear has left the shelf it can only come back.
    BookingStatus.CHECKED_OUT: frozenset({BookingStatus.RETURNED}),
    BookingStatus.RETURNED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def allowed_transitions(current: BookingStatus) -> FrozenSet[BookingStatus]:
    return TRANSITIONS[current]


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_legal(current: BookingStatus, requested: BookingStatus) -> bool:
    return requested in TRANSITIONS[current]


def assert_legal(current: BookingStatus, requested: BookingStatus) -> None:
    """Raise ``IllegalTransition`` unless ``current -> requested`` is in the table."""

    if not is_legal(current, requested):
        raise IllegalTransition(current, requested)
