"""Use-case layer of the rental booking engine.

``BookingOrchestrator`` is the only writer of bookings and the only caller
of the ledger's checkout/return side effects. Each public mutation runs in
one transaction: any error raised along the way rolls back every change it
made (supersessions, auto-rejections, stock moves), and audit events are
only emitted once the commit has gone through.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .database import atomic
from .errors import BookingNotFound, IllegalTransition, InvalidInterval, ItemUnavailable, PastStartDate, SlotTaken
from .events import (
    RENTAL_AUTO_CANCELLED,
    RENTAL_AUTO_REJECTED,
    RENTAL_CREATE,
    Actor,
    EventSink,
    build_event_sink,
    emit_safely,
    status_event_type,
)
from .ledger import ResourceLedger
from .lifecycle import assert_legal
from .models import ACTIVE_STATUSES, Booking, BookingStatus, ItemStatus, to_naive_utc, utcnow
from .overlap import ConflictQuery, Interval, find_conflicts
from .targets import BookingTarget, make_target

logger = logging.getLogger(__name__)

SUPERSEDED_BY_NEW_REQUEST = "superseded by new request"
SUPERSEDED_BY_APPROVAL = "superseded by approved overlapping rental"


@dataclass(frozen=True)
class HandoverEvidence:
    """Opaque pickup/return proof stored alongside the transition."""

    note: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class CreateResult:
    booking: Booking
    superseded_ids: List[int] = field(default_factory=list)


@dataclass
class TransitionResult:
    booking: Booking
    auto_rejected_ids: List[int] = field(default_factory=list)
    auto_rejected_requester_ids: List[str] = field(default_factory=list)


class BookingOrchestrator:
    def __init__(
        self,
        db: Session,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.events = events if events is not None else build_event_sink()
        self.clock = clock
        self.ledger = ResourceLedger(db)

    # -- queries -------------------------------------------------------

    def get_booking(self, booking_id: int, *, lock: bool = False) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        booking = self.db.scalars(stmt).first()
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    def list_bookings(
        self,
        requester_id: Optional[str] = None,
        resource_type_id: Optional[int] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]:
        stmt = select(Booking).order_by(Booking.created_at.desc(), Booking.id.desc()).execution_options(
            populate_existing=True
        )
        if requester_id is not None:
            stmt = stmt.where(Booking.requester_id == requester_id)
        if resource_type_id is not None:
            stmt = stmt.where(Booking.resource_type_id == resource_type_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        return list(self.db.scalars(stmt))

    def find_conflicts(
        self,
        resource_type_id: int,
        start: datetime,
        end: datetime,
        resource_item_id: Optional[int] = None,
        statuses: Iterable[BookingStatus] = ACTIVE_STATUSES,
        exclude_booking_id: Optional[int] = None,
        exclude_requester_id: Optional[str] = None,
    ) -> List[Booking]:
        query = ConflictQuery(
            target=make_target(resource_type_id, resource_item_id),
            interval=Interval(to_naive_utc(start), to_naive_utc(end)),
            statuses=frozenset(statuses),
            exclude_booking_id=exclude_booking_id,
            exclude_requester_id=exclude_requester_id,
        )
        return find_conflicts(self.db, query)

    # -- create --------------------------------------------------------

    def create_booking(
        self,
        requester: Actor,
        resource_type_id: int,
        start: datetime,
        end: datetime,
        resource_item_id: Optional[int] = None,
        note: Optional[str] = None,
        allow_overlap: bool = False,
    ) -> CreateResult:
        """Create a PENDING booking.

        The requester's own overlapping PENDING bookings on the same target
        are cancelled in the same transaction. Unless ``allow_overlap`` is
        set, an active booking by anyone else raises ``SlotTaken`` carrying
        the conflicting rows.
        """

        interval = Interval(to_naive_utc(start), to_naive_utc(end))
        if not interval.is_well_formed:
            raise InvalidInterval(interval.start, interval.end)
        now = self.clock()
        if interval.start < now:
            raise PastStartDate(interval.start, now)

        target = make_target(resource_type_id, resource_item_id)
        with atomic(self.db):
            self._check_target_bookable(target)
            superseded = self._supersede_own_requests(requester, target, interval)

            if not allow_overlap:
                conflicts = find_conflicts(
                    self.db,
                    ConflictQuery(target=target, interval=interval, exclude_requester_id=requester.id),
                )
                if conflicts:
                    logger.info(
                        "Rejected booking request by %s on resource %s: %s conflicting",
                        requester.id,
                        resource_type_id,
                        len(conflicts),
                    )
                    raise SlotTaken(conflicts)

            booking = Booking(
                requester_id=requester.id,
                requester_name=requester.label,
                resource_type_id=resource_type_id,
                resource_item_id=resource_item_id,
                start_time=interval.start,
                end_time=interval.end,
                status=BookingStatus.PENDING,
                request_note=note,
            )
            self.db.add(booking)
            self.db.flush()

        logger.info(
            "Created booking %s for %s on resource %s item %s (%s superseded)",
            booking.id,
            requester.id,
            resource_type_id,
            resource_item_id,
            len(superseded),
        )
        for old_id in superseded:
            emit_safely(
                self.events,
                requester,
                RENTAL_AUTO_CANCELLED,
                old_id,
                {"reason": SUPERSEDED_BY_NEW_REQUEST, "replaced_by": booking.id},
            )
        emit_safely(
            self.events,
            requester,
            RENTAL_CREATE,
            booking.id,
            {
                "resource_type_id": resource_type_id,
                "resource_item_id": resource_item_id,
                "start_time": interval.start.isoformat(),
                "end_time": interval.end.isoformat(),
                "allow_overlap": allow_overlap,
                "superseded_ids": superseded,
            },
        )
        return CreateResult(booking=booking, superseded_ids=superseded)

    def _check_target_bookable(self, target: BookingTarget) -> None:
        # Locking the type row serialises concurrent creates against the same resource.
        self.ledger.get_resource_type(target.resource_type_id, lock=True)
        if target.resource_item_id is not None:
            item = self.ledger.get_item(target.resource_type_id, target.resource_item_id, lock=True)
            if item.status != ItemStatus.AVAILABLE:
                raise ItemUnavailable(item.id, item.status)

    def _supersede_own_requests(self, requester: Actor, target: BookingTarget, interval: Interval) -> List[int]:
        stale = find_conflicts(
            self.db,
            ConflictQuery(
                target=target,
                interval=interval,
                statuses=frozenset({BookingStatus.PENDING}),
                requester_id=requester.id,
            ),
            lock=True,
        )
        superseded = []
        for booking in stale:
            if self._compare_and_set(
                booking.id,
                BookingStatus.PENDING,
                BookingStatus.CANCELLED,
                {"cancel_reason": SUPERSEDED_BY_NEW_REQUEST},
            ):
                superseded.append(booking.id)
        return superseded

    # -- transitions ---------------------------------------------------

    def update_status(
        self,
        booking_id: int,
        requested: BookingStatus,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None,
        evidence: Optional[HandoverEvidence] = None,
    ) -> TransitionResult:
        """Move a booking along the lifecycle and apply the side effects.

        PENDING -> APPROVED rejects every other overlapping PENDING booking on
        the same target; entering CHECKED_OUT or RETURNED moves stock through
        the ledger. A ledger failure leaves the booking in its prior status.
        """

        actor = actor or Actor.system()
        with atomic(self.db):
            # Resource type row first, then bookings: the same order create_booking locks in.
            resource_type_id = self.get_booking(booking_id).resource_type_id
            self.ledger.get_resource_type(resource_type_id, lock=True)
            booking = self.get_booking(booking_id, lock=True)
            current = booking.status
            assert_legal(current, requested)

            if not self._compare_and_set(booking.id, current, requested, self._transition_fields(requested, reason, evidence)):
                # Someone else moved the booking between our read and write.
                latest = self.get_booking(booking_id)
                raise IllegalTransition(latest.status, requested)

            rejected: List[Tuple[int, str]] = []
            if current == BookingStatus.PENDING and requested == BookingStatus.APPROVED:
                rejected = self._auto_reject_competitors(booking)

            if requested == BookingStatus.CHECKED_OUT:
                self.ledger.reserve_on_checkout(booking.target)
            elif requested == BookingStatus.RETURNED:
                self.ledger.release_on_return(booking.target)

            booking = self.get_booking(booking_id)

        rejected_ids = [rejected_id for rejected_id, _ in rejected]
        logger.info(
            "Booking %s moved %s -> %s by %s (%s auto-rejected)",
            booking_id,
            current.value,
            requested.value,
            actor.id,
            len(rejected_ids),
        )
        emit_safely(
            self.events,
            actor,
            status_event_type(requested),
            booking_id,
            {
                "from": current.value,
                "to": requested.value,
                "reason": reason,
                "requester_id": booking.requester_id,
                "requester_name": booking.requester_name,
                "auto_rejected_ids": rejected_ids,
            },
        )
        for rejected_id, requester_id in rejected:
            emit_safely(
                self.events,
                actor,
                RENTAL_AUTO_REJECTED,
                rejected_id,
                {"reason": SUPERSEDED_BY_APPROVAL, "approved_booking_id": booking_id, "requester_id": requester_id},
            )
        return TransitionResult(
            booking=booking,
            auto_rejected_ids=rejected_ids,
            auto_rejected_requester_ids=[requester_id for _, requester_id in rejected],
        )

    def _auto_reject_competitors(self, approved: Booking) -> List[Tuple[int, str]]:
        competitors = find_conflicts(
            self.db,
            ConflictQuery(
                target=approved.target,
                interval=Interval(approved.start_time, approved.end_time),
                statuses=frozenset({BookingStatus.PENDING}),
                exclude_booking_id=approved.id,
            ),
            lock=True,
        )
        rejected = []
        for competitor in competitors:
            if self._compare_and_set(
                competitor.id,
                BookingStatus.PENDING,
                BookingStatus.REJECTED,
                {"reject_reason": SUPERSEDED_BY_APPROVAL},
            ):
                rejected.append((competitor.id, competitor.requester_id))
        return rejected

    @staticmethod
    def _transition_fields(
        requested: BookingStatus,
        reason: Optional[str],
        evidence: Optional[HandoverEvidence],
    ) -> Dict[str, Optional[str]]:
        fields: Dict[str, Optional[str]] = {}
        if requested == BookingStatus.REJECTED and reason:
            fields["reject_reason"] = reason
        elif requested == BookingStatus.CANCELLED and reason:
            fields["cancel_reason"] = reason
        if evidence is not None:
            if requested == BookingStatus.CHECKED_OUT:
                fields["checkout_note"] = evidence.note
                fields["checkout_image_url"] = evidence.image_url
            elif requested == BookingStatus.RETURNED:
                fields["return_note"] = evidence.note
                fields["return_image_url"] = evidence.image_url
        return fields

    def _compare_and_set(
        self,
        booking_id: int,
        expected: BookingStatus,
        requested: BookingStatus,
        fields: Optional[Dict[str, Optional[str]]] = None,
    ) -> bool:
        assert_legal(expected, requested)
        result = self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected)
            .values(status=requested, updated_at=utcnow(), **(fields or {}))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
