"""Tests for booking creation and lifecycle transitions."""
from datetime import timedelta

import pytest

from gear_rental.errors import (
    BookingNotFound,
    IllegalTransition,
    InvalidInterval,
    ItemNotFound,
    ItemUnavailable,
    OutOfStock,
    PastStartDate,
    ResourceNotFound,
    SlotTaken,
)
from gear_rental.models import BookingStatus, ItemStatus, ResourceStatus
from gear_rental.orchestrator import (
    SUPERSEDED_BY_APPROVAL,
    SUPERSEDED_BY_NEW_REQUEST,
    BookingOrchestrator,
    HandoverEvidence,
)

from conftest import ADMIN, ALICE, BOB, CAROL, ExplodingEventSink, future


def approve_and_checkout(orchestrator, booking_id):
    orchestrator.update_status(booking_id, BookingStatus.APPROVED, actor=ADMIN)
    return orchestrator.update_status(booking_id, BookingStatus.CHECKED_OUT, actor=ADMIN)


class TestCreateValidation:
    def test_end_before_start(self, orchestrator, camera):
        with pytest.raises(InvalidInterval):
            orchestrator.create_booking(ALICE, camera.id, future(5), future(4))

    def test_empty_interval(self, orchestrator, camera):
        start = future(5)
        with pytest.raises(InvalidInterval):
            orchestrator.create_booking(ALICE, camera.id, start, start)

    def test_backdated_start(self, orchestrator, camera):
        with pytest.raises(PastStartDate):
            orchestrator.create_booking(ALICE, camera.id, future(-2), future(3))

    def test_clock_is_injectable(self, db_session, events, camera):
        start = future(48)
        late_clock = BookingOrchestrator(db_session, events=events, clock=lambda: start + timedelta(minutes=1))

        with pytest.raises(PastStartDate):
            late_clock.create_booking(ALICE, camera.id, start, start + timedelta(hours=1))

    def test_unknown_resource(self, orchestrator):
        with pytest.raises(ResourceNotFound):
            orchestrator.create_booking(ALICE, 404, future(1), future(2))

    def test_unknown_item(self, orchestrator, camera, tripods):
        with pytest.raises(ItemNotFound):
            orchestrator.create_booking(ALICE, camera.id, future(1), future(2), resource_item_id=tripods.items[0].id)

    def test_item_must_be_available(self, orchestrator, ledger, tripods):
        item = tripods.items[0]
        ledger.set_item_status(tripods.id, item.id, ItemStatus.UNAVAILABLE)

        with pytest.raises(ItemUnavailable):
            orchestrator.create_booking(ALICE, tripods.id, future(1), future(2), resource_item_id=item.id)

    def test_created_booking_is_pending_and_emits_event(self, orchestrator, events, camera):
        result = orchestrator.create_booking(ALICE, camera.id, future(1), future(3), note="Event shoot")

        booking = result.booking
        assert booking.status == BookingStatus.PENDING
        assert booking.requester_id == ALICE.id
        assert booking.requester_name == ALICE.label
        assert booking.request_note == "Event shoot"
        assert result.superseded_ids == []
        assert events.types() == ["RENTAL_CREATE"]
        assert events.events[0]["actor_label"] == "Alice"


class TestSlotTaken:
    def test_other_users_active_booking_blocks(self, orchestrator, camera):
        first = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking

        with pytest.raises(SlotTaken) as exc_info:
            orchestrator.create_booking(BOB, camera.id, future(3), future(7))

        assert [conflict["id"] for conflict in exc_info.value.conflicts] == [first.id]
        payload = exc_info.value.to_dict()
        assert payload["code"] == "slot_taken"
        assert payload["conflicts"][0]["requester_id"] == ALICE.id
        assert payload["conflicts"][0]["status"] == "PENDING"

    def test_touching_bookings_are_accepted(self, orchestrator, camera):
        start = future(10)
        orchestrator.create_booking(ALICE, camera.id, start, start + timedelta(hours=1))

        result = orchestrator.create_booking(BOB, camera.id, start + timedelta(hours=1), start + timedelta(hours=2))
        assert result.booking.status == BookingStatus.PENDING

    def test_allow_overlap_overrides(self, orchestrator, camera):
        orchestrator.create_booking(ALICE, camera.id, future(1), future(5))

        result = orchestrator.create_booking(BOB, camera.id, future(3), future(7), allow_overlap=True)
        assert result.booking.status == BookingStatus.PENDING

    def test_terminal_bookings_do_not_block(self, orchestrator, camera):
        first = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        orchestrator.update_status(first.id, BookingStatus.REJECTED, actor=ADMIN, reason="not this week")

        result = orchestrator.create_booking(BOB, camera.id, future(3), future(7))
        assert result.booking.status == BookingStatus.PENDING

    def test_different_items_do_not_collide(self, orchestrator, tripods):
        first, second = tripods.items[0], tripods.items[1]
        orchestrator.create_booking(ALICE, tripods.id, future(1), future(5), resource_item_id=first.id)

        result = orchestrator.create_booking(BOB, tripods.id, future(1), future(5), resource_item_id=second.id)
        assert result.booking.resource_item_id == second.id

    def test_failed_create_leaves_no_trace(self, orchestrator, events, camera):
        orchestrator.create_booking(ALICE, camera.id, future(1), future(5))
        with pytest.raises(SlotTaken):
            orchestrator.create_booking(BOB, camera.id, future(2), future(3))

        assert len(orchestrator.list_bookings()) == 1
        assert events.types() == ["RENTAL_CREATE"]


class TestSelfSupersession:
    def test_new_request_cancels_own_stale_pending(self, orchestrator, events, camera):
        old = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking

        result = orchestrator.create_booking(ALICE, camera.id, future(2), future(6))

        assert result.superseded_ids == [old.id]
        stale = orchestrator.get_booking(old.id)
        assert stale.status == BookingStatus.CANCELLED
        assert stale.cancel_reason == SUPERSEDED_BY_NEW_REQUEST
        pending = orchestrator.list_bookings(requester_id=ALICE.id, status=BookingStatus.PENDING)
        assert [booking.id for booking in pending] == [result.booking.id]
        assert events.types() == ["RENTAL_CREATE", "RENTAL_AUTO_CANCELLED", "RENTAL_CREATE"]

    def test_non_overlapping_own_requests_survive(self, orchestrator, camera):
        old = orchestrator.create_booking(ALICE, camera.id, future(1), future(2)).booking

        result = orchestrator.create_booking(ALICE, camera.id, future(3), future(4))

        assert result.superseded_ids == []
        assert orchestrator.get_booking(old.id).status == BookingStatus.PENDING

    def test_approved_own_booking_is_not_superseded(self, orchestrator, camera):
        old = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        orchestrator.update_status(old.id, BookingStatus.APPROVED, actor=ADMIN)

        result = orchestrator.create_booking(ALICE, camera.id, future(2), future(6))

        assert result.superseded_ids == []
        assert orchestrator.get_booking(old.id).status == BookingStatus.APPROVED

    def test_supersession_is_rolled_back_when_create_fails(self, orchestrator, camera):
        mine = orchestrator.create_booking(ALICE, camera.id, future(1), future(3)).booking
        orchestrator.create_booking(BOB, camera.id, future(4), future(8))

        with pytest.raises(SlotTaken):
            orchestrator.create_booking(ALICE, camera.id, future(2), future(6))

        assert orchestrator.get_booking(mine.id).status == BookingStatus.PENDING


class TestAutoRejection:
    def test_approval_rejects_exactly_the_overlapping_pending(self, orchestrator, events, camera):
        winner = orchestrator.create_booking(ALICE, camera.id, future(10), future(20)).booking
        loser_one = orchestrator.create_booking(BOB, camera.id, future(12), future(14), allow_overlap=True).booking
        loser_two = orchestrator.create_booking(CAROL, camera.id, future(18), future(30), allow_overlap=True).booking
        bystander = orchestrator.create_booking(BOB, camera.id, future(40), future(50)).booking

        result = orchestrator.update_status(winner.id, BookingStatus.APPROVED, actor=ADMIN)

        assert result.booking.status == BookingStatus.APPROVED
        assert result.auto_rejected_ids == [loser_one.id, loser_two.id]
        assert result.auto_rejected_requester_ids == [BOB.id, CAROL.id]
        for loser in (loser_one, loser_two):
            rejected = orchestrator.get_booking(loser.id)
            assert rejected.status == BookingStatus.REJECTED
            assert rejected.reject_reason == SUPERSEDED_BY_APPROVAL
        assert orchestrator.get_booking(bystander.id).status == BookingStatus.PENDING
        assert events.types()[-3:] == ["RENTAL_STATUS_APPROVED", "RENTAL_AUTO_REJECTED", "RENTAL_AUTO_REJECTED"]

    def test_item_approval_only_rejects_same_item(self, orchestrator, tripods):
        first, second = tripods.items[0], tripods.items[1]
        winner = orchestrator.create_booking(ALICE, tripods.id, future(1), future(5), resource_item_id=first.id).booking
        rival = orchestrator.create_booking(
            BOB, tripods.id, future(1), future(5), resource_item_id=first.id, allow_overlap=True
        ).booking
        elsewhere = orchestrator.create_booking(CAROL, tripods.id, future(1), future(5), resource_item_id=second.id).booking

        result = orchestrator.update_status(winner.id, BookingStatus.APPROVED, actor=ADMIN)

        assert result.auto_rejected_ids == [rival.id]
        assert orchestrator.get_booking(elsewhere.id).status == BookingStatus.PENDING

    def test_no_auto_rejection_outside_approval(self, orchestrator, camera):
        winner = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        orchestrator.update_status(winner.id, BookingStatus.APPROVED, actor=ADMIN)
        latecomer = orchestrator.create_booking(BOB, camera.id, future(2), future(3), allow_overlap=True).booking

        result = orchestrator.update_status(winner.id, BookingStatus.CHECKED_OUT, actor=ADMIN)

        assert result.auto_rejected_ids == []
        assert orchestrator.get_booking(latecomer.id).status == BookingStatus.PENDING


class TestTransitions:
    def test_illegal_transition_does_not_mutate(self, orchestrator, events, camera):
        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking

        with pytest.raises(IllegalTransition) as exc_info:
            orchestrator.update_status(booking.id, BookingStatus.RETURNED, actor=ADMIN)

        assert exc_info.value.current == BookingStatus.PENDING
        assert exc_info.value.requested == BookingStatus.RETURNED
        assert orchestrator.get_booking(booking.id).status == BookingStatus.PENDING
        assert events.types() == ["RENTAL_CREATE"]

    def test_terminal_status_is_final(self, orchestrator, camera):
        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        orchestrator.update_status(booking.id, BookingStatus.CANCELLED, actor=ALICE, reason="plans changed")

        for requested in BookingStatus:
            with pytest.raises(IllegalTransition):
                orchestrator.update_status(booking.id, requested, actor=ADMIN)
        cancelled = orchestrator.get_booking(booking.id)
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancel_reason == "plans changed"

    def test_unknown_booking(self, orchestrator):
        with pytest.raises(BookingNotFound):
            orchestrator.update_status(12345, BookingStatus.APPROVED, actor=ADMIN)

    def test_reject_reason_is_recorded(self, orchestrator, camera):
        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking

        result = orchestrator.update_status(booking.id, BookingStatus.REJECTED, actor=ADMIN, reason="under repair")

        assert result.booking.reject_reason == "under repair"

    def test_evidence_is_recorded_on_handover(self, orchestrator, camera):
        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        orchestrator.update_status(booking.id, BookingStatus.APPROVED, actor=ADMIN)

        orchestrator.update_status(
            booking.id,
            BookingStatus.CHECKED_OUT,
            actor=ADMIN,
            evidence=HandoverEvidence(note="lens cap missing", image_url="https://img.example/out.jpg"),
        )
        result = orchestrator.update_status(
            booking.id,
            BookingStatus.RETURNED,
            actor=ADMIN,
            evidence=HandoverEvidence(note="all good"),
        )

        assert result.booking.checkout_note == "lens cap missing"
        assert result.booking.checkout_image_url == "https://img.example/out.jpg"
        assert result.booking.return_note == "all good"
        assert result.booking.return_image_url is None

    def test_ledger_failure_rolls_back_transition(self, orchestrator, ledger, events, camera):
        first = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        second = orchestrator.create_booking(BOB, camera.id, future(10), future(15)).booking
        orchestrator.update_status(first.id, BookingStatus.APPROVED, actor=ADMIN)
        orchestrator.update_status(second.id, BookingStatus.APPROVED, actor=ADMIN)
        orchestrator.update_status(first.id, BookingStatus.CHECKED_OUT, actor=ADMIN)
        emitted = len(events.events)

        with pytest.raises(OutOfStock):
            orchestrator.update_status(second.id, BookingStatus.CHECKED_OUT, actor=ADMIN)

        assert orchestrator.get_booking(second.id).status == BookingStatus.APPROVED
        assert ledger.get_resource_type(camera.id).stock_count == 0
        assert len(events.events) == emitted

    def test_item_ledger_failure_rolls_back_transition(self, orchestrator, db_session, camera):
        item = camera.items[0]
        first = orchestrator.create_booking(ALICE, camera.id, future(1), future(5), resource_item_id=item.id).booking
        second = orchestrator.create_booking(
            BOB, camera.id, future(10), future(15), resource_item_id=item.id
        ).booking
        orchestrator.update_status(first.id, BookingStatus.APPROVED, actor=ADMIN)
        orchestrator.update_status(second.id, BookingStatus.APPROVED, actor=ADMIN)
        orchestrator.update_status(first.id, BookingStatus.CHECKED_OUT, actor=ADMIN)

        with pytest.raises(ItemUnavailable):
            orchestrator.update_status(second.id, BookingStatus.CHECKED_OUT, actor=ADMIN)

        assert orchestrator.get_booking(second.id).status == BookingStatus.APPROVED

    def test_event_sink_failure_never_fails_the_booking(self, db_session, camera):
        orchestrator = BookingOrchestrator(db_session, events=ExplodingEventSink())

        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        result = orchestrator.update_status(booking.id, BookingStatus.APPROVED, actor=ADMIN)

        assert result.booking.status == BookingStatus.APPROVED

    def test_transition_locks_resource_before_booking(self, orchestrator, monkeypatch, camera):
        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking
        locked = []
        get_resource_type = orchestrator.ledger.get_resource_type
        get_booking = orchestrator.get_booking

        def record_resource(resource_type_id, *, lock=False):
            if lock:
                locked.append("resource")
            return get_resource_type(resource_type_id, lock=lock)

        def record_booking(booking_id, *, lock=False):
            if lock:
                locked.append("booking")
            return get_booking(booking_id, lock=lock)

        monkeypatch.setattr(orchestrator.ledger, "get_resource_type", record_resource)
        monkeypatch.setattr(orchestrator, "get_booking", record_booking)

        orchestrator.update_status(booking.id, BookingStatus.APPROVED, actor=ADMIN)

        assert locked[:2] == ["resource", "booking"]

    def test_status_event_carries_actor_snapshot(self, orchestrator, events, camera):
        booking = orchestrator.create_booking(ALICE, camera.id, future(1), future(5)).booking

        orchestrator.update_status(booking.id, BookingStatus.APPROVED, actor=ADMIN)

        event = events.events[-1]
        assert event["event_type"] == "RENTAL_STATUS_APPROVED"
        assert event["actor_id"] == ADMIN.id
        assert event["actor_label"] == ADMIN.label
        assert event["payload"]["from"] == "PENDING"
        assert event["payload"]["requester_name"] == ALICE.label


class TestConservation:
    def test_checkout_then_return_restores_stock(self, orchestrator, ledger, tripods):
        before = ledger.get_resource_type(tripods.id).stock_count
        # Disjoint windows, so approving one never auto-rejects the other.
        bookings = [
            orchestrator.create_booking(actor, tripods.id, future(offset + 1), future(offset + 5)).booking
            for offset, actor in ((0, ALICE), (10, BOB))
        ]

        for booking in bookings:
            approve_and_checkout(orchestrator, booking.id)
        assert ledger.get_resource_type(tripods.id).stock_count == before - 2

        for booking in bookings:
            orchestrator.update_status(booking.id, BookingStatus.RETURNED, actor=ADMIN)
        assert ledger.get_resource_type(tripods.id).stock_count == before


class TestCameraScenario:
    """Single camera, one item, two competing requesters."""

    def test_full_rental_cycle(self, orchestrator, ledger, camera):
        item = camera.items[0]
        assert item.code == "001"
        day1 = future(24).replace(hour=9, minute=0, second=0, microsecond=0)

        a_booking = orchestrator.create_booking(
            ALICE, camera.id, day1, day1 + timedelta(days=2), resource_item_id=item.id
        ).booking
        assert a_booking.status == BookingStatus.PENDING

        with pytest.raises(SlotTaken):
            orchestrator.create_booking(
                BOB, camera.id, day1 + timedelta(days=1), day1 + timedelta(days=3), resource_item_id=item.id
            )

        approved = orchestrator.update_status(a_booking.id, BookingStatus.APPROVED, actor=ADMIN)
        assert approved.auto_rejected_ids == []

        orchestrator.update_status(a_booking.id, BookingStatus.CHECKED_OUT, actor=ADMIN)
        resource = ledger.get_resource_type(camera.id)
        assert ledger.get_item(camera.id, item.id).status == ItemStatus.RENTED
        assert resource.stock_count == 0
        assert resource.status == ResourceStatus.UNAVAILABLE

        orchestrator.update_status(a_booking.id, BookingStatus.RETURNED, actor=ADMIN)
        resource = ledger.get_resource_type(camera.id)
        assert ledger.get_item(camera.id, item.id).status == ItemStatus.AVAILABLE
        assert resource.stock_count == 1
        assert resource.status == ResourceStatus.AVAILABLE
