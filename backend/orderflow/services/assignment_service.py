# Overview: Assignment Engine; order state machine, claim arbitration and queue re-evaluation.

"""
Assignment Engine

================================================================================
STATE MACHINE
================================================================================

    PENDING -> ASSIGNED -> PREPARING -> READY -> SERVED (dine_in)    -> COMPLETED
                  |                          +-> DELIVERED (other)  -/
                  +-> PENDING (explicit release only)

    Any state before COMPLETED -> CANCELLED.
    COMPLETED and CANCELLED are terminal.

RULES:
1. Every status write is a compare-and-swap on the current status
   (order_service.conditional_update_status). Transitions for one order are
   therefore totally ordered; a stale writer gets a conflict, never a
   silent overwrite.
2. Reachability is checked before entitlement: an unreachable target is an
   InvalidTransitionError whoever asks.
3. Only the assigned staff member moves an order past ASSIGNED.
4. Claim = capacity reservation + CAS(pending -> assigned, unassigned) in ONE
   transaction. Losing the CAS rolls the reservation back and raises
   AlreadyClaimedError. The engine never retries a lost claim.
5. Every reservation has exactly one release: when the order reaches
   SERVED/DELIVERED, is released back to PENDING, or is cancelled while
   still holding capacity. capacity_released_at records it.
6. Nothing reverts ASSIGNED on a timer. Stale assignments are reported
   (stale_assignments) for the owner to act on.

Notifications and realtime events are emitted only after commit.
================================================================================
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..actors import ADMIN, CUSTOMER_SESSION, OWNER, STAFF, Actor, require_assigned_staff
from ..errors import (
    AlreadyClaimedError,
    AuthorizationError,
    CapacityExceededError,
    ConflictError,
    InvalidTransitionError,
    OrderflowError,
    StaffUnavailableError,
    ValidationError,
)
from ..extensions import db, realtime
from ..models import Order, OrderQueueEntry, OrderStatus, Restaurant, StaffMember
from ..models.orders import PAYMENT_METHODS, TERMINAL_STATUSES
from ..realtime import OrderEvent, StaffAvailabilityEvent
from ..time_utils import minutes_between, utcnow
from . import notification_service, order_service, queue_service, staff_service
from .concurrency import run_with_retry


TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ASSIGNED, OrderStatus.CANCELLED},
    OrderStatus.ASSIGNED: {OrderStatus.PREPARING, OrderStatus.PENDING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.SERVED, OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.SERVED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

TIMESTAMP_FIELDS = {
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.SERVED: "served_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# Targets reached by the assigned staff through advance_order
STAFF_PROGRESSION = (
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.SERVED,
    OrderStatus.DELIVERED,
)

# Reaching one of these frees the staff member's slot
CAPACITY_RELEASE_STATUSES = (OrderStatus.SERVED, OrderStatus.DELIVERED)


def _parse_status(value) -> OrderStatus:
    try:
        return OrderStatus.parse(value)
    except ValueError as e:
        raise ValidationError(str(e))


def can_transition(from_status, to_status, order_type: str | None = None) -> bool:
    """
    Check whether a transition is reachable.

    From READY, SERVED is only for dine-in orders and DELIVERED only for
    takeaway/delivery; order_type=None skips that check.
    """
    current = OrderStatus.parse(from_status)
    target = OrderStatus.parse(to_status)
    if target not in TRANSITIONS[current]:
        return False
    if current == OrderStatus.READY and order_type is not None:
        if target == OrderStatus.SERVED:
            return order_type == "dine_in"
        if target == OrderStatus.DELIVERED:
            return order_type != "dine_in"
    return True


def _require_transition(order: Order, target: OrderStatus) -> OrderStatus:
    current = OrderStatus.parse(order.status)
    if not can_transition(current, target, order.order_type):
        raise InvalidTransitionError(
            details={"order_id": order.id, "from": current.value, "to": target.value}
        )
    return current


def _publish(order: Order, previous_status, assigned_staff_id=None) -> None:
    realtime.publish(
        OrderEvent(
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            order_number=order.order_number,
            status=OrderStatus.parse(order.status).value,
            previous_status=OrderStatus.parse(previous_status).value if previous_status else None,
            assigned_staff_id=assigned_staff_id if assigned_staff_id is not None else order.assigned_staff_id,
            session_id=order.session_id,
        )
    )


def _announce_if_free(availability) -> None:
    if availability is not None and availability.has_capacity:
        staff_service.announce_availability(availability)


def _write_transition(
    order: Order,
    current: OrderStatus,
    target: OrderStatus,
    fields: dict,
    *,
    expected_staff_id=order_service.ANY_STAFF,
    release_capacity: bool = False,
):
    """
    CAS the status, release capacity when asked, drop any queue entry on a
    terminal target, commit. Returns (order, released availability or None).
    """
    availability_id = order.assigned_availability_id
    order_id = order.id

    def _op():
        try:
            updated = order_service.conditional_update_status(
                order_id, current, target, fields, expected_staff_id=expected_staff_id
            )
        except ConflictError:
            db.session.rollback()
            raise ConflictError(
                "This order was changed by someone else. Refresh and try again.",
                details={"order_id": order_id, "expected_status": current.value},
            )

        try:
            released = staff_service.release(availability_id) if release_capacity else None
        except OrderflowError:
            db.session.rollback()
            raise

        if target in TERMINAL_STATUSES:
            queue_service.dequeue(order_id)
        db.session.commit()
        return updated, released

    return run_with_retry(_op)


# =============================================================================
# Claim
# =============================================================================

def claim_order(order_id: int, staff_id: int) -> Order:
    """
    Claim a pending order for a staff member.

    Raises:
        AuthorizationError: staff inactive or from another restaurant
        AlreadyClaimedError: order no longer pending/unassigned at write time
        InvalidTransitionError: order already completed or cancelled
        StaffUnavailableError: staff offline today
        CapacityExceededError: staff at max_capacity
    """
    order = order_service.get_order(order_id)
    staff = staff_service.get_staff(staff_id)
    if not staff.is_active or staff.restaurant_id != order.restaurant_id:
        raise AuthorizationError(
            "Staff member does not work at this restaurant",
            details={"order_id": order_id, "staff_id": staff_id},
        )

    current = OrderStatus.parse(order.status)
    if current != OrderStatus.PENDING:
        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                details={"order_id": order_id, "from": current.value, "to": OrderStatus.ASSIGNED.value}
            )
        raise AlreadyClaimedError(details={"order_id": order_id, "status": current.value})

    def _op() -> Order:
        try:
            availability = staff_service.reserve(staff_id)
        except OrderflowError:
            db.session.rollback()
            raise

        now = utcnow()
        try:
            claimed = order_service.conditional_update_status(
                order_id,
                OrderStatus.PENDING,
                OrderStatus.ASSIGNED,
                {
                    "assigned_staff_id": staff_id,
                    "assigned_availability_id": availability.id,
                    "assigned_at": now,
                    "capacity_released_at": None,
                    "updated_at": now,
                },
                expected_staff_id=None,
            )
        except ConflictError:
            # Undo the reservation together with the failed claim
            db.session.rollback()
            raise AlreadyClaimedError(details={"order_id": order_id})

        queue_service.dequeue(order_id)
        db.session.commit()
        return claimed

    claimed = run_with_retry(_op)

    notification_service.notify_claimed(claimed)
    _publish(claimed, OrderStatus.PENDING)
    return claimed


def auto_assign(order_id: int, *, exclude_staff_ids=()) -> Order | None:
    """
    Claim a pending order for the best-ranked eligible staff member.

    Candidates are tried in rank order; one that went offline or filled up
    since the ranking query is skipped. Returns None when nobody could
    take it or another claim got there first.
    """
    order = order_service.get_order(order_id)
    if OrderStatus.parse(order.status) != OrderStatus.PENDING:
        return None

    for availability in staff_service.eligible_staff(order.restaurant_id, exclude_staff_ids=exclude_staff_ids):
        try:
            return claim_order(order_id, availability.staff_id)
        except (CapacityExceededError, StaffUnavailableError):
            continue
        except (AlreadyClaimedError, InvalidTransitionError):
            return None
    return None


def _route_pending(order: Order, *, exclude_staff_ids=()) -> Order:
    """
    Decide what happens to an order sitting in PENDING with no owner:
    auto-claim, announce to eligible staff, or queue and alert the owner.
    """
    restaurant = order.restaurant
    if restaurant.auto_assign:
        claimed = auto_assign(order.id, exclude_staff_ids=exclude_staff_ids)
        if claimed is not None:
            return claimed

    order = order_service.get_order(order.id)
    if OrderStatus.parse(order.status) != OrderStatus.PENDING or order.assigned_staff_id is not None:
        return order

    candidates = staff_service.eligible_staff(order.restaurant_id, exclude_staff_ids=exclude_staff_ids)
    if candidates:
        notification_service.notify_order_created(order, [c.staff_id for c in candidates], queued=False)
        return order

    queue_service.enqueue(order, "normal")
    db.session.commit()
    notification_service.notify_order_created(order, [], queued=True)
    return order


# =============================================================================
# Placement
# =============================================================================

def place_order(restaurant_id: int, items, actor: Actor, **fields) -> Order:
    """
    Create an order and route it.

    - customer_session: order is tied to the caller's session
    - staff: staff-assisted order, claimed by that staff member when they
      are online with capacity, otherwise routed like any other order
    - owner/admin: placed on behalf of a table
    """
    restaurant = db.session.get(Restaurant, restaurant_id)
    staff_id = None

    if actor.kind == CUSTOMER_SESSION:
        session_id = fields.get("session_id") or actor.id
        if session_id != actor.id:
            raise AuthorizationError("Customers can only order for their own session")
        fields["session_id"] = session_id
    elif actor.kind == STAFF:
        staff = staff_service.get_staff(actor.staff_id) if actor.staff_id is not None else None
        if staff is None or not staff.is_active or staff.restaurant_id != restaurant_id:
            raise AuthorizationError("Staff member does not work at this restaurant")
        staff_id = staff.id
    elif actor.kind == OWNER:
        if restaurant is not None and not actor.is_owner_of(restaurant):
            raise AuthorizationError("Only the restaurant owner can do this")

    order = order_service.create_order(restaurant_id, items, **fields)
    _publish(order, None)

    if staff_id is not None:
        try:
            return claim_order(order.id, staff_id)
        except (CapacityExceededError, StaffUnavailableError) as e:
            current_app.logger.info(
                "Staff %s could not take their own order %s (%s); routing it", staff_id, order.order_number, e.code
            )

    return _route_pending(order)


# =============================================================================
# Progression
# =============================================================================

def advance_order(order_id: int, target_status, actor: Actor) -> Order:
    """Move an order forward (preparing, ready, served/delivered). Assigned staff only."""
    order = order_service.get_order(order_id)
    target = _parse_status(target_status)
    if target not in STAFF_PROGRESSION:
        raise InvalidTransitionError(
            details={"order_id": order.id, "from": OrderStatus.parse(order.status).value, "to": target.value}
        )

    current = _require_transition(order, target)
    require_assigned_staff(actor, order)

    now = utcnow()
    fields = {TIMESTAMP_FIELDS[target]: now, "updated_at": now}
    release_capacity = target in CAPACITY_RELEASE_STATUSES and order.holds_capacity
    if release_capacity:
        fields["capacity_released_at"] = now

    updated, released = _write_transition(
        order, current, target, fields,
        expected_staff_id=actor.staff_id,
        release_capacity=release_capacity,
    )

    notification_service.notify_status_changed(updated, current)
    _publish(updated, current)
    _announce_if_free(released)
    return updated


def complete_order(
    order_id: int,
    actor: Actor,
    *,
    payment_reference: str | None = None,
    payment_method: str | None = None,
) -> Order:
    """
    Close a served/delivered order and record its payment as completed.

    Assigned staff, the owner or an admin may complete.
    """
    order = order_service.get_order(order_id)
    current = _require_transition(order, OrderStatus.COMPLETED)
    if not (actor.kind == ADMIN or actor.is_assigned_to(order) or actor.is_owner_of(order.restaurant)):
        raise AuthorizationError()

    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment_method '{payment_method}'. Must be one of: {', '.join(sorted(PAYMENT_METHODS))}"
        )

    now = utcnow()
    fields = {"completed_at": now, "updated_at": now, "payment_status": "completed"}
    if payment_reference:
        fields["payment_reference"] = payment_reference[:128]
    if payment_method:
        fields["payment_method"] = payment_method

    release_capacity = order.holds_capacity
    if release_capacity:
        fields["capacity_released_at"] = now

    updated, released = _write_transition(order, current, OrderStatus.COMPLETED, fields, release_capacity=release_capacity)

    notification_service.notify_status_changed(updated, current)
    _publish(updated, current)
    _announce_if_free(released)
    return updated


def release_order(order_id: int, actor: Actor, reason: str = "") -> Order:
    """
    Hand an assigned order back (staff "reject", or owner reassignment).

    assigned -> pending, assignment cleared, capacity released, owner told
    with order_rejected. The order is then re-routed without the staff
    member who held it.
    """
    order = order_service.get_order(order_id)
    current = _require_transition(order, OrderStatus.PENDING)
    if not (actor.kind == ADMIN or actor.is_assigned_to(order) or actor.is_owner_of(order.restaurant)):
        raise AuthorizationError()

    previous_staff_id = order.assigned_staff_id
    now = utcnow()
    fields = {
        "assigned_staff_id": None,
        "assigned_availability_id": None,
        "assigned_at": None,
        "capacity_released_at": None,
        "assignment_round": Order.assignment_round + 1,
        "updated_at": now,
    }
    updated, _released = _write_transition(
        order, current, OrderStatus.PENDING, fields,
        expected_staff_id=previous_staff_id,
        release_capacity=order.holds_capacity,
    )

    current_app.logger.info(
        "Order %s released by %s (round %s)", updated.order_number, actor.label, updated.assignment_round
    )
    notification_service.notify_released(updated, previous_staff_id, (reason or "").strip())
    _publish(updated, current, assigned_staff_id=previous_staff_id)

    # The releasing staff's freed slot is not announced: re-evaluation
    # would hand the same order straight back to them.
    return _route_pending(updated, exclude_staff_ids={previous_staff_id})


def _authorize_cancel(actor: Actor, order: Order, current: OrderStatus) -> None:
    if actor.kind == ADMIN or actor.is_owner_of(order.restaurant):
        return
    if actor.kind == CUSTOMER_SESSION:
        if not actor.is_customer_of(order):
            raise AuthorizationError()
        if current != OrderStatus.PENDING:
            raise AuthorizationError("Orders can only be cancelled before staff accept them")
        return
    if actor.kind == STAFF:
        if actor.is_assigned_to(order):
            return
        staff = db.session.get(StaffMember, actor.staff_id) if actor.staff_id is not None else None
        if (
            staff is not None
            and staff.is_active
            and staff.restaurant_id == order.restaurant_id
            and current == OrderStatus.PENDING
            and order.assigned_staff_id is None
        ):
            return
    raise AuthorizationError()


def cancel_order(order_id: int, actor: Actor, reason: str = "") -> Order:
    """Cancel from any state before completion; frees capacity and the queue slot."""
    order = order_service.get_order(order_id)
    current = _require_transition(order, OrderStatus.CANCELLED)
    _authorize_cancel(actor, order, current)

    now = utcnow()
    fields = {
        "cancelled_at": now,
        "cancel_reason": (reason or "").strip()[:255] or None,
        "cancelled_by": actor.label[:96],
        "updated_at": now,
    }
    release_capacity = order.holds_capacity
    if release_capacity:
        fields["capacity_released_at"] = now

    updated, released = _write_transition(
        order, current, OrderStatus.CANCELLED, fields, release_capacity=release_capacity
    )

    staff_to_tell = updated.assigned_staff_id if not actor.is_assigned_to(updated) else None
    notification_service.notify_status_changed(updated, current, staff_id=staff_to_tell)
    _publish(updated, current)
    _announce_if_free(released)
    return updated


def transition_order(order_id: int, target_status, actor: Actor, **kwargs) -> Order:
    """Single entry point for "move this order to <status>"."""
    target = _parse_status(target_status)
    if target == OrderStatus.ASSIGNED:
        order = order_service.get_order(order_id)
        current = OrderStatus.parse(order.status)
        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                details={"order_id": order.id, "from": current.value, "to": target.value}
            )
        if actor.kind != STAFF or actor.staff_id is None:
            raise AuthorizationError("Only staff can claim orders")
        return claim_order(order_id, actor.staff_id)
    if target == OrderStatus.PENDING:
        return release_order(order_id, actor, kwargs.get("reason", ""))
    if target == OrderStatus.CANCELLED:
        return cancel_order(order_id, actor, kwargs.get("reason", ""))
    if target == OrderStatus.COMPLETED:
        return complete_order(
            order_id, actor,
            payment_reference=kwargs.get("payment_reference"),
            payment_method=kwargs.get("payment_method"),
        )
    return advance_order(order_id, target, actor)


# =============================================================================
# Queue re-evaluation (driven by availability events)
# =============================================================================

def reevaluate_queue(restaurant_id: int) -> list[Order]:
    """
    Work the queue head-first after some staff member became available.

    Auto-assign restaurants: claim the head for the best eligible staff
    until the queue or the eligible staff run out. Manual restaurants:
    announce every queued order (new_order) to the eligible staff.
    """
    restaurant = db.session.get(Restaurant, restaurant_id)
    if restaurant is None or not restaurant.is_active:
        return []

    if not restaurant.auto_assign:
        candidates = staff_service.eligible_staff(restaurant_id)
        if not candidates:
            return []
        staff_ids = [c.staff_id for c in candidates]
        orders = [
            entry.order
            for entry in db.session.query(OrderQueueEntry)
            .filter(OrderQueueEntry.restaurant_id == restaurant_id)
            .order_by(
                OrderQueueEntry.priority_level.desc(),
                OrderQueueEntry.created_at.asc(),
                OrderQueueEntry.id.asc(),
            )
            .all()
        ]
        for order in orders:
            notification_service.notify_new_order(order, staff_ids)
        return orders

    claimed = []
    while True:
        head = queue_service.queue_head(restaurant_id)
        if head is None or not staff_service.eligible_staff(restaurant_id):
            break

        order_id = head.order_id
        order = auto_assign(order_id)
        if order is None:
            stale = order_service.get_order(order_id)
            if OrderStatus.parse(stale.status) != OrderStatus.PENDING:
                # Closed or claimed elsewhere without leaving the queue
                queue_service.dequeue(order_id)
                db.session.commit()
                continue
            break

        current_app.logger.info(
            "Assigned queued order %s to staff %s", order.order_number, order.assigned_staff_id
        )
        claimed.append(order)

    if claimed:
        queue_service.refresh_estimates(restaurant_id)
        db.session.commit()
    return claimed


def _on_availability_changed(event: StaffAvailabilityEvent) -> None:
    if event.has_capacity:
        reevaluate_queue(event.restaurant_id)


def register_listeners(app) -> None:
    """Subscribe queue re-evaluation to availability changes on this app."""
    with app.app_context():
        realtime.subscribe(StaffAvailabilityEvent.kind, _on_availability_changed)


# =============================================================================
# Reporting
# =============================================================================

def stale_assignments(restaurant_id: int | None = None, older_than_minutes: int | None = None) -> list[dict]:
    """
    Orders claimed but not started for longer than the threshold.

    Report only: these stay assigned until their staff member, the owner or
    an admin releases or cancels them.
    """
    threshold = older_than_minutes
    if threshold is None:
        threshold = current_app.config.get("STALE_ASSIGNMENT_MINUTES", 30)
    now = utcnow()
    cutoff = now - timedelta(minutes=threshold)

    query = db.session.query(Order).filter(
        Order.status == OrderStatus.ASSIGNED,
        Order.assigned_at <= cutoff,
    )
    if restaurant_id is not None:
        query = query.filter(Order.restaurant_id == restaurant_id)

    rows = []
    for order in query.order_by(Order.assigned_at.asc(), Order.id.asc()).all():
        availability = staff_service.find_availability(order.assigned_staff_id)
        rows.append({
            "order_id": order.id,
            "order_number": order.order_number,
            "restaurant_id": order.restaurant_id,
            "assigned_staff_id": order.assigned_staff_id,
            "staff_name": order.assigned_staff.display_name if order.assigned_staff else None,
            "staff_online": bool(availability and availability.is_online),
            "minutes_assigned": int(minutes_between(order.assigned_at, now) or 0),
        })
    return rows
