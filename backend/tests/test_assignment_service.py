"""
Assignment Engine tests.

State machine reachability, claim arbitration, capacity bookkeeping across
every exit from an assignment, routing of new orders and queue re-evaluation.
"""

from datetime import timedelta

import pytest

from orderflow.actors import Actor
from orderflow.errors import (
    AlreadyClaimedError,
    AuthorizationError,
    CapacityExceededError,
    ConflictError,
    InvalidTransitionError,
    StaffUnavailableError,
)
from orderflow.extensions import db
from orderflow.models import Notification, Order, OrderQueueEntry, OrderStatus
from orderflow.realtime import OrderEvent
from orderflow.services import assignment_service, order_service, queue_service, staff_service
from orderflow.services.assignment_service import can_transition

from conftest import ITEMS, load, open_orders, staff_actor


def _status(order_id):
    order = db.session.get(Order, order_id, populate_existing=True)
    return OrderStatus.parse(order.status)


def _notification_types(recipient_type, recipient_id):
    return sorted(
        n.notification_type
        for n in db.session.query(Notification).filter_by(
            recipient_type=recipient_type, recipient_id=str(recipient_id)
        )
    )


# =============================================================================
# STATE MACHINE
# =============================================================================

class TestTransitionTable:

    @pytest.mark.parametrize("current,target", [
        ("pending", "assigned"),
        ("pending", "cancelled"),
        ("assigned", "preparing"),
        ("assigned", "pending"),
        ("preparing", "ready"),
        ("ready", "served"),
        ("ready", "delivered"),
        ("served", "completed"),
        ("delivered", "completed"),
        ("ready", "cancelled"),
    ])
    def test_reachable(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize("current,target", [
        ("pending", "ready"),
        ("pending", "preparing"),
        ("assigned", "ready"),
        ("preparing", "pending"),
        ("completed", "cancelled"),
        ("cancelled", "pending"),
        ("completed", "assigned"),
        ("served", "ready"),
    ])
    def test_unreachable(self, current, target):
        assert can_transition(current, target) is False

    def test_ready_branch_follows_order_type(self):
        assert can_transition("ready", "served", "dine_in") is True
        assert can_transition("ready", "delivered", "dine_in") is False
        assert can_transition("ready", "delivered", "takeaway") is True
        assert can_transition("ready", "served", "delivery") is False


# =============================================================================
# CLAIM
# =============================================================================

class TestClaim:

    def test_claim_reserves_capacity(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha", online=True)
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")

        claimed = assignment_service.claim_order(order.id, asha.id)

        assert claimed.status == OrderStatus.ASSIGNED
        assert claimed.assigned_staff_id == asha.id
        assert claimed.assigned_at is not None
        assert load(asha) == 1

    def test_second_claim_loses_without_touching_capacity(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha", online=True)
        ben = make_staff(restaurant, "Ben", online=True)
        order = order_service.create_order(restaurant.id, ITEMS)

        assignment_service.claim_order(order.id, asha.id)
        with pytest.raises(AlreadyClaimedError) as exc:
            assignment_service.claim_order(order.id, ben.id)

        assert exc.value.message == "Order already taken"
        assert exc.value.status_code == 409
        assert db.session.get(Order, order.id).assigned_staff_id == asha.id
        assert load(asha) == 1
        assert load(ben) == 0

    def test_claim_at_capacity_leaves_order_pending(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha", online=True, capacity=1)
        first = order_service.create_order(restaurant.id, ITEMS)
        second = order_service.create_order(restaurant.id, ITEMS)
        assignment_service.claim_order(first.id, asha.id)

        with pytest.raises(CapacityExceededError):
            assignment_service.claim_order(second.id, asha.id)

        assert _status(second.id) == OrderStatus.PENDING
        assert load(asha) == 1

    def test_offline_staff_cannot_claim(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha")
        order = order_service.create_order(restaurant.id, ITEMS)
        with pytest.raises(StaffUnavailableError):
            assignment_service.claim_order(order.id, asha.id)
        assert _status(order.id) == OrderStatus.PENDING

    def test_staff_of_other_restaurant_rejected(self, restaurant, other_restaurant, make_staff):
        outsider = make_staff(other_restaurant, "Outsider", online=True)
        order = order_service.create_order(restaurant.id, ITEMS)
        with pytest.raises(AuthorizationError):
            assignment_service.claim_order(order.id, outsider.id)

    def test_claim_of_cancelled_order_is_invalid(self, restaurant, make_staff, owner):
        asha = make_staff(restaurant, "Asha", online=True)
        order = order_service.create_order(restaurant.id, ITEMS)
        assignment_service.cancel_order(order.id, owner, "test")
        with pytest.raises(InvalidTransitionError):
            assignment_service.claim_order(order.id, asha.id)

    def test_claim_removes_queue_entry(self, manual_restaurant, make_staff):
        order = order_service.create_order(manual_restaurant.id, ITEMS)
        queue_service.enqueue(order)
        db.session.commit()
        asha = make_staff(manual_restaurant, "Asha", online=True)

        assignment_service.claim_order(order.id, asha.id)
        assert queue_service.get_entry(order.id) is None


# =============================================================================
# PROGRESSION
# =============================================================================

class TestProgression:

    @pytest.fixture
    def assigned(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha", online=True)
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1", tax_cents=2500)
        assignment_service.claim_order(order.id, asha.id)
        return order, asha

    def test_skip_ahead_is_invalid_and_changes_nothing(self, assigned):
        order, asha = assigned
        with pytest.raises(InvalidTransitionError):
            assignment_service.transition_order(order.id, "ready", staff_actor(asha))
        assert _status(order.id) == OrderStatus.ASSIGNED

    def test_pending_to_ready_is_invalid(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha")
        order = order_service.create_order(restaurant.id, ITEMS)
        with pytest.raises(InvalidTransitionError):
            assignment_service.transition_order(order.id, "ready", staff_actor(asha))
        assert _status(order.id) == OrderStatus.PENDING

    def test_only_assigned_staff_advance(self, assigned, restaurant, make_staff, owner):
        order, _asha = assigned
        ben = make_staff(restaurant, "Ben", online=True)
        for actor in (staff_actor(ben), owner, Actor("customer_session", "sess-1")):
            with pytest.raises(AuthorizationError):
                assignment_service.advance_order(order.id, "preparing", actor)
        assert _status(order.id) == OrderStatus.ASSIGNED

    def test_served_frees_capacity_once(self, assigned, owner):
        order, asha = assigned
        actor = staff_actor(asha)
        for target in ("preparing", "ready", "served"):
            assignment_service.transition_order(order.id, target, actor)
        assert load(asha) == 0

        completed = assignment_service.transition_order(order.id, "completed", owner, payment_reference="pay-1")
        assert completed.status == OrderStatus.COMPLETED
        assert completed.payment_status == "completed"
        assert completed.payment_reference == "pay-1"
        assert load(asha) == 0

    def test_dine_in_cannot_be_delivered(self, assigned):
        order, asha = assigned
        actor = staff_actor(asha)
        assignment_service.advance_order(order.id, "preparing", actor)
        assignment_service.advance_order(order.id, "ready", actor)
        with pytest.raises(InvalidTransitionError):
            assignment_service.advance_order(order.id, "delivered", actor)

    def test_timestamps_are_ordered(self, assigned):
        order, asha = assigned
        actor = staff_actor(asha)
        for target in ("preparing", "ready", "served"):
            assignment_service.advance_order(order.id, target, actor)
        done = db.session.get(Order, order.id, populate_existing=True)
        assert done.created_at <= done.assigned_at <= done.preparing_at <= done.ready_at <= done.served_at

    def test_terminal_orders_stay_terminal(self, assigned, owner):
        order, asha = assigned
        assignment_service.cancel_order(order.id, owner, "closing early")
        for target in ("pending", "assigned", "preparing", "completed", "cancelled"):
            with pytest.raises((InvalidTransitionError, AuthorizationError)):
                assignment_service.transition_order(order.id, target, staff_actor(asha))
        assert _status(order.id) == OrderStatus.CANCELLED


# =============================================================================
# END TO END
# =============================================================================

class TestHappyPath:

    def test_order_to_completion(self, manual_restaurant, make_staff, owner, events):
        asha = make_staff(manual_restaurant, "Asha", online=True)
        customer = Actor("customer_session", "sess-1")

        order = assignment_service.place_order(
            manual_restaurant.id, ITEMS, customer, tax_cents=2500, table_id=7
        )
        assert order.total_cents == 52500
        assert order.status == OrderStatus.PENDING
        assert _notification_types("staff", asha.id) == ["new_order"]

        actor = staff_actor(asha)
        assignment_service.transition_order(order.id, "assigned", actor)
        for target in ("preparing", "ready", "served"):
            assignment_service.transition_order(order.id, target, actor)
        assignment_service.complete_order(order.id, actor)

        assert _status(order.id) == OrderStatus.COMPLETED
        assert load(asha) == 0

        statuses = [e.status for e in events if isinstance(e, OrderEvent) and e.order_id == order.id]
        assert statuses == ["pending", "assigned", "preparing", "ready", "served", "completed"]

        customer_types = _notification_types("customer_session", "sess-1")
        assert customer_types.count("status_changed") == 5
        assert "order_accepted" in _notification_types("owner", owner.id)


# =============================================================================
# ROUTING
# =============================================================================

class TestRouting:

    def test_auto_assign_picks_best_ranked(self, restaurant, make_staff, customer):
        make_staff(restaurant, "Ben", rating=4.5, online=True)
        asha = make_staff(restaurant, "Asha", rating=4.8, online=True)

        order = assignment_service.place_order(restaurant.id, ITEMS, customer)

        assert order.status == OrderStatus.ASSIGNED
        assert order.assigned_staff_id == asha.id

    def test_no_staff_queues_and_alerts_owner(self, restaurant, customer, owner):
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)

        assert order.status == OrderStatus.PENDING
        assert queue_service.get_entry(order.id) is not None
        notification = db.session.query(Notification).filter_by(
            recipient_type="owner", notification_type="no_staff_available"
        ).one()
        assert notification.priority == "urgent"

    def test_manual_mode_announces_to_eligible_staff(self, manual_restaurant, make_staff, customer, owner):
        asha = make_staff(manual_restaurant, "Asha", online=True)
        ben = make_staff(manual_restaurant, "Ben", online=True)
        make_staff(manual_restaurant, "Offline")

        order = assignment_service.place_order(manual_restaurant.id, ITEMS, customer)

        assert order.status == OrderStatus.PENDING
        assert queue_service.get_entry(order.id) is None
        recipients = sorted(
            n.recipient_id
            for n in db.session.query(Notification).filter_by(recipient_type="staff", notification_type="new_order")
        )
        assert recipients == sorted([str(asha.id), str(ben.id)])
        assert _notification_types("owner", owner.id) == ["new_order"]

    def test_customer_cannot_order_for_another_session(self, restaurant, customer):
        with pytest.raises(AuthorizationError):
            assignment_service.place_order(restaurant.id, ITEMS, customer, session_id="sess-other")

    def test_staff_assisted_order_is_claimed_by_creator(self, manual_restaurant, make_staff):
        asha = make_staff(manual_restaurant, "Asha", online=True)
        order = assignment_service.place_order(manual_restaurant.id, ITEMS, staff_actor(asha), table_id=3)
        assert order.status == OrderStatus.ASSIGNED
        assert order.assigned_staff_id == asha.id
        assert load(asha) == 1

    def test_staff_assisted_order_routes_when_creator_is_full(self, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha", online=True, capacity=1)
        ben = make_staff(restaurant, "Ben", rating=4.0, online=True)
        assignment_service.place_order(restaurant.id, ITEMS, staff_actor(asha))

        second = assignment_service.place_order(restaurant.id, ITEMS, staff_actor(asha))
        assert second.assigned_staff_id == ben.id


# =============================================================================
# RELEASE AND CANCEL
# =============================================================================

class TestRelease:

    def test_release_reassigns_to_someone_else(self, restaurant, make_staff, customer, owner):
        asha = make_staff(restaurant, "Asha", rating=4.8, online=True)
        ben = make_staff(restaurant, "Ben", rating=4.5, online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        assert order.assigned_staff_id == asha.id

        released = assignment_service.release_order(order.id, staff_actor(asha), "too busy")

        assert released.assigned_staff_id == ben.id
        assert released.assignment_round == 1
        assert load(asha) == 0
        assert load(ben) == 1
        assert "order_rejected" in _notification_types("owner", owner.id)

    def test_release_with_nobody_else_queues(self, restaurant, make_staff, customer):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)

        released = assignment_service.release_order(order.id, staff_actor(asha))

        assert released.status == OrderStatus.PENDING
        assert released.assigned_staff_id is None
        assert released.assigned_at is None
        assert queue_service.get_entry(order.id) is not None
        assert load(asha) == 0

    def test_reclaim_after_release_notifies_again(self, manual_restaurant, make_staff):
        asha = make_staff(manual_restaurant, "Asha", online=True)
        order = order_service.create_order(manual_restaurant.id, ITEMS)
        assignment_service.claim_order(order.id, asha.id)
        assignment_service.release_order(order.id, staff_actor(asha))
        assignment_service.claim_order(order.id, asha.id)

        assert _notification_types("staff", asha.id).count("order_assigned") == 2

    def test_only_holder_or_owner_releases(self, restaurant, make_staff, customer):
        asha = make_staff(restaurant, "Asha", rating=4.8, online=True)
        ben = make_staff(restaurant, "Ben", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        assert order.assigned_staff_id == asha.id

        for actor in (staff_actor(ben), customer, Actor("owner", "owner-2")):
            with pytest.raises(AuthorizationError):
                assignment_service.release_order(order.id, actor)

    def test_release_after_preparing_is_invalid(self, restaurant, make_staff, customer):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        assignment_service.advance_order(order.id, "preparing", staff_actor(asha))
        with pytest.raises(InvalidTransitionError):
            assignment_service.release_order(order.id, staff_actor(asha))


class TestCancel:

    def test_customer_cancels_pending(self, restaurant, customer):
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        cancelled = assignment_service.cancel_order(order.id, customer, "changed my mind")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_by == "customer_session:sess-1"
        assert cancelled.cancel_reason == "changed my mind"
        assert queue_service.get_entry(order.id) is None

    def test_customer_cannot_cancel_after_claim(self, restaurant, make_staff, customer):
        make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        with pytest.raises(AuthorizationError):
            assignment_service.cancel_order(order.id, customer)

    def test_owner_cancel_releases_capacity(self, restaurant, make_staff, customer, owner):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        assignment_service.advance_order(order.id, "preparing", staff_actor(asha))

        assignment_service.cancel_order(order.id, owner, "kitchen closed")

        assert load(asha) == 0
        assert "status_changed" in _notification_types("staff", asha.id)

    def test_cancel_after_served_does_not_double_release(self, restaurant, make_staff, customer, owner):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        for target in ("preparing", "ready", "served"):
            assignment_service.advance_order(order.id, target, staff_actor(asha))

        assignment_service.cancel_order(order.id, owner, "comped")
        assert load(asha) == 0

    def test_other_owner_cannot_cancel(self, restaurant, customer):
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        with pytest.raises(AuthorizationError):
            assignment_service.cancel_order(order.id, Actor("owner", "owner-2"))


# =============================================================================
# WORKLOAD INVARIANT
# =============================================================================

class TestWorkloadInvariant:

    def test_counter_matches_open_orders_through_mixed_lifecycle(self, restaurant, make_staff, customer, owner):
        asha = make_staff(restaurant, "Asha", rating=4.8, online=True, capacity=3)
        ben = make_staff(restaurant, "Ben", rating=4.5, online=True, capacity=3)

        orders = [assignment_service.place_order(restaurant.id, ITEMS, customer) for _ in range(5)]

        def check():
            for staff in (asha, ben):
                assert load(staff) == open_orders(staff)

        check()
        held_by_asha = [o.id for o in orders if o.assigned_staff_id == asha.id]

        assignment_service.advance_order(held_by_asha[0], "preparing", staff_actor(asha))
        check()
        assignment_service.cancel_order(held_by_asha[1], owner, "")
        check()
        assignment_service.release_order(held_by_asha[2], staff_actor(asha))
        check()
        for target in ("ready", "served"):
            assignment_service.advance_order(held_by_asha[0], target, staff_actor(asha))
        check()
        assignment_service.complete_order(held_by_asha[0], owner)
        check()

    def test_stale_writer_gets_conflict(self, restaurant, make_staff, customer):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        current = OrderStatus.parse(order.status)

        # Someone else moved it first
        assignment_service.advance_order(order.id, "preparing", staff_actor(asha))

        with pytest.raises(ConflictError):
            assignment_service._write_transition(
                order, current, OrderStatus.PREPARING, {}, expected_staff_id=asha.id
            )


# =============================================================================
# QUEUE RE-EVALUATION
# =============================================================================

class TestQueueReevaluation:

    def test_staff_coming_online_takes_urgent_first(self, restaurant, make_staff, customer):
        normal = assignment_service.place_order(restaurant.id, ITEMS, customer)
        urgent = assignment_service.place_order(restaurant.id, ITEMS, customer)
        queue_service.set_priority(urgent.id, "urgent")

        asha = make_staff(restaurant, "Asha", online=True, capacity=1)

        assert db.session.get(Order, urgent.id, populate_existing=True).assigned_staff_id == asha.id
        assert _status(normal.id) == OrderStatus.PENDING
        assert [e.order_id for e in db.session.query(OrderQueueEntry)] == [normal.id]

    def test_freed_capacity_drains_queue(self, restaurant, make_staff, customer):
        asha = make_staff(restaurant, "Asha", online=True, capacity=1)
        first = assignment_service.place_order(restaurant.id, ITEMS, customer)
        waiting = assignment_service.place_order(restaurant.id, ITEMS, customer)
        assert first.assigned_staff_id == asha.id
        assert queue_service.get_entry(waiting.id) is not None

        for target in ("preparing", "ready", "served"):
            assignment_service.advance_order(first.id, target, staff_actor(asha))

        assert db.session.get(Order, waiting.id, populate_existing=True).assigned_staff_id == asha.id
        assert queue_service.get_entry(waiting.id) is None
        assert load(asha) == 1

    def test_manual_mode_announces_queue(self, manual_restaurant, make_staff, customer):
        order = assignment_service.place_order(manual_restaurant.id, ITEMS, customer)
        assert queue_service.get_entry(order.id) is not None

        asha = make_staff(manual_restaurant, "Asha", online=True)

        assert _status(order.id) == OrderStatus.PENDING
        assert _notification_types("staff", asha.id) == ["new_order"]


class TestStaleAssignments:

    def test_reports_without_reverting(self, db_session, restaurant, make_staff, customer):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)
        order.assigned_at = order.assigned_at - timedelta(minutes=45)
        db_session.commit()

        rows = assignment_service.stale_assignments(restaurant.id)

        assert [r["order_id"] for r in rows] == [order.id]
        assert rows[0]["staff_name"] == "Asha"
        assert rows[0]["minutes_assigned"] >= 45
        assert _status(order.id) == OrderStatus.ASSIGNED
        assert assignment_service.stale_assignments(restaurant.id, older_than_minutes=60) == []
        assert load(asha) == 1
