"""Typed failures raised by the rental core.

Every error carries a stable ``code`` and a ``to_dict()`` payload so the HTTP
layer can hand structured detail back to clients (which bookings overlap,
which statuses were involved) instead of a bare message.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .models import Booking, BookingStatus, ItemStatus


class RentalError(Exception):
    """Base class for every failure the core reports to its caller."""

    code = "rental_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class ValidationFailure(RentalError):
    """The caller supplied input that can never succeed as given."""


class ConflictFailure(RentalError):
    """Shared state changed under the caller; input may succeed later or with an override."""


class LookupFailure(RentalError):
    """A referenced record does not exist."""


class InvalidInterval(ValidationFailure):
    code = "invalid_interval"

    def __init__(self, start, end) -> None:
        super().__init__("End time must be after start time")
        self.start = start
        self.end = end


class PastStartDate(ValidationFailure):
    code = "past_start_date"

    def __init__(self, start, now) -> None:
        super().__init__("Start time cannot be in the past")
        self.start = start
        self.now = now


class InvalidLedgerChange(ValidationFailure):
    code = "invalid_ledger_change"


class SlotTaken(ConflictFailure):
    code = "slot_taken"

    def __init__(self, conflicts: Sequence["Booking"]) -> None:
        super().__init__(f"Equipment is already booked for this period ({len(conflicts)} conflicting)")
        # Snapshot now: the rows expire once the surrounding transaction rolls back.
        self.conflicts = [
            {
                "id": booking.id,
                "requester_id": booking.requester_id,
                "requester_name": booking.requester_name,
                "status": booking.status.value,
                "start_time": booking.start_time.isoformat(),
                "end_time": booking.end_time.isoformat(),
                "resource_item_id": booking.resource_item_id,
            }
            for booking in conflicts
        ]

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["conflicts"] = [dict(conflict) for conflict in self.conflicts]
        return payload


class ItemUnavailable(ConflictFailure):
    code = "item_unavailable"

    def __init__(self, item_id: int, status: Optional["ItemStatus"]) -> None:
        label = status.value if status is not None else "unknown"
        super().__init__(f"Item {item_id} is not available (status {label})")
        self.item_id = item_id
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["item_id"] = self.item_id
        payload["status"] = self.status.value if self.status is not None else None
        return payload


class OutOfStock(ConflictFailure):
    code = "out_of_stock"

    def __init__(self, resource_type_id: int) -> None:
        super().__init__(f"Equipment {resource_type_id} is out of stock")
        self.resource_type_id = resource_type_id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["resource_type_id"] = self.resource_type_id
        return payload


class IllegalTransition(ConflictFailure):
    code = "illegal_transition"

    def __init__(self, current: "BookingStatus", requested: "BookingStatus") -> None:
        super().__init__(f"Cannot transition from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["current"] = self.current.value
        payload["requested"] = self.requested.value
        return payload


class BookingNotFound(LookupFailure):
    code = "booking_not_found"

    def __init__(self, booking_id: int) -> None:
        super().__init__(f"Rental with ID {booking_id} not found")
        self.booking_id = booking_id


class ResourceNotFound(LookupFailure):
    code = "resource_not_found"

    def __init__(self, resource_type_id: int) -> None:
        super().__init__(f"Equipment with ID {resource_type_id} not found")
        self.resource_type_id = resource_type_id


class ItemNotFound(LookupFailure):
    code = "item_not_found"

    def __init__(self, item_id: int, resource_type_id: Optional[int] = None) -> None:
        if resource_type_id is None:
            message = f"Item with ID {item_id} not found"
        else:
            message = f"Item with ID {item_id} not found for equipment {resource_type_id}"
        super().__init__(message)
        self.item_id = item_id
        self.resource_type_id = resource_type_id
