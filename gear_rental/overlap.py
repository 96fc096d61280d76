"""Overlap detection between booking intervals.

Intervals are half-open ``[start, end)``: two bookings conflict when
``start_a < end_b and end_a > start_b``, so a booking ending at 11:00 and
one starting at 11:00 never collide.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import ACTIVE_STATUSES, Booking, BookingStatus
from .targets import BookingTarget, SerializedItem


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    @property
    def is_well_formed(self) -> bool:
        return self.start < self.end


@dataclass(frozen=True)
class ConflictQuery:
    """Named predicate describing which bookings count as a conflict.

    ``target`` decides the granularity: a ``SerializedItem`` only matches
    bookings on that exact item, an ``Aggregate`` matches every booking on
    the resource type whatever item it holds.
    """

    target: BookingTarget
    interval: Interval
    statuses: FrozenSet[BookingStatus] = field(default=ACTIVE_STATUSES)
    exclude_booking_id: Optional[int] = None
    exclude_requester_id: Optional[str] = None
    requester_id: Optional[str] = None


def find_conflicts(db: Session, query: ConflictQuery, *, lock: bool = False) -> List[Booking]:
    """Return bookings matching ``query`` ordered by start time.

    Read-only. With ``lock=True`` the matched rows are selected ``FOR UPDATE``
    on backends that support it, so the caller can transition them inside
    the same transaction without another writer slipping in.
    """

    if not query.statuses:
        return []

    stmt = select(Booking).where(
        Booking.resource_type_id == query.target.resource_type_id,
        Booking.status.in_(sorted(query.statuses, key=lambda status: status.value)),
        Booking.start_time < query.interval.end,
        Booking.end_time > query.interval.start,
    )
    if isinstance(query.target, SerializedItem):
        stmt = stmt.where(Booking.resource_item_id == query.target.item_id)
    if query.exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != query.exclude_booking_id)
    if query.exclude_requester_id is not None:
        stmt = stmt.where(Booking.requester_id != query.exclude_requester_id)
    if query.requester_id is not None:
        stmt = stmt.where(Booking.requester_id == query.requester_id)
    stmt = stmt.order_by(Booking.start_time.asc(), Booking.id.asc()).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    return list(db.scalars(stmt))
