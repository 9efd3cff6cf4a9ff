# Overview: Notification Fan-out; turns committed order transitions into per-recipient notifications.

"""
Notification Fan-out

Runs AFTER the transition it describes has been committed. Delivery is a
best-effort side channel: any failure is logged and swallowed here so the
persisted transition stays authoritative.

IDEMPOTENCY:
Each notification carries a unique dedupe_key

    <order id>:<event>:<recipient type>:<recipient id>[:r<assignment round>]

where event is the new status (or "released"). The round suffix only
appears once a release has re-opened the order, so a second claim after a
release notifies again while a redelivered transition does not.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError
from ..extensions import db, realtime
from ..models import Notification, Order, OrderStatus
from ..models.notifications import RECIPIENT_CUSTOMER, RECIPIENT_OWNER, RECIPIENT_STAFF, RECIPIENT_TYPES
from ..realtime import NotificationEvent
from ..time_utils import utcnow


STATUS_LABELS = {
    OrderStatus.PENDING: "waiting for staff",
    OrderStatus.ASSIGNED: "accepted by staff",
    OrderStatus.PREPARING: "being prepared",
    OrderStatus.READY: "ready",
    OrderStatus.SERVED: "served",
    OrderStatus.DELIVERED: "delivered",
    OrderStatus.COMPLETED: "completed",
    OrderStatus.CANCELLED: "cancelled",
}


def dedupe_key(order_id, event: str, recipient_type: str, recipient_id, assignment_round: int = 0) -> str:
    key = f"{order_id}:{event}:{recipient_type}:{recipient_id}"
    if assignment_round:
        key = f"{key}:r{assignment_round}"
    return key


def deliver(
    *,
    restaurant_id: int,
    order_id: int | None,
    event: str,
    recipient_type: str,
    recipient_id,
    notification_type: str,
    title: str,
    message: str,
    payload: dict | None = None,
    priority: str = "normal",
    assignment_round: int = 0,
) -> Notification | None:
    """
    Persist one notification and publish it on the recipient's channel.

    Returns None when the same (order, event, recipient) was already
    delivered. Commits on its own; call only with no other pending writes.
    """
    if recipient_type not in RECIPIENT_TYPES:
        raise ValueError(f"Unknown recipient type '{recipient_type}'")

    key = dedupe_key(order_id, event, recipient_type, recipient_id, assignment_round)
    if db.session.query(Notification.id).filter_by(dedupe_key=key).first() is not None:
        return None

    now = utcnow()
    retention = current_app.config.get("NOTIFICATION_RETENTION_HOURS", 24)
    notification = Notification(
        restaurant_id=restaurant_id,
        order_id=order_id,
        recipient_type=recipient_type,
        recipient_id=str(recipient_id),
        notification_type=notification_type,
        title=title,
        message=message,
        payload=payload or {},
        priority=priority,
        is_read=False,
        dedupe_key=key,
        created_at=now,
        expires_at=now + timedelta(hours=retention),
    )
    db.session.add(notification)
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent redelivery won the insert
        db.session.rollback()
        return None

    realtime.publish(
        NotificationEvent(
            notification_id=notification.id,
            restaurant_id=restaurant_id,
            recipient_type=recipient_type,
            recipient_id=str(recipient_id),
            notification_type=notification_type,
            order_id=order_id,
        )
    )
    return notification


def _payload(order: Order, **extra) -> dict:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": OrderStatus.parse(order.status).value,
        "table_id": order.table_id,
        "total_cents": order.total_cents,
    }
    data.update(extra)
    return data


def _fanout(description: str, order: Order, deliveries) -> list[Notification]:
    """Run a batch of deliveries; a failed recipient is logged and skipped."""
    restaurant_id, order_id = order.restaurant_id, order.id
    sent = []
    for kwargs in deliveries:
        try:
            notification = deliver(restaurant_id=restaurant_id, order_id=order_id, **kwargs)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to deliver %s notification for order %s to %s %s",
                description, order_id, kwargs.get("recipient_type"), kwargs.get("recipient_id"),
            )
            continue
        if notification is not None:
            sent.append(notification)
    return sent


def _owner_id(order: Order) -> str | None:
    return order.restaurant.owner_id if order.restaurant else None


def notify_new_order(order: Order, staff_ids) -> list[Notification]:
    """new_order to each given staff member (eligible to pick the order up)."""
    def _deliveries():
        for staff_id in staff_ids:
            yield dict(
                event=OrderStatus.PENDING.value,
                recipient_type=RECIPIENT_STAFF,
                recipient_id=staff_id,
                notification_type="new_order",
                title=f"New order {order.order_number}",
                message=f"Order {order.order_number} is waiting to be claimed",
                payload=_payload(order),
                priority="high",
                assignment_round=order.assignment_round,
            )

    return _fanout("new order", order, _deliveries())


def notify_order_created(order: Order, eligible_staff_ids, queued: bool) -> list[Notification]:
    """
    Order left pending after creation (or after a release).

    queued: nobody was eligible; owner gets an urgent no_staff_available.
    Otherwise eligible staff and the owner get new_order.
    """
    owner_id = _owner_id(order)

    def _deliveries():
        if queued:
            if owner_id:
                yield dict(
                    event=OrderStatus.PENDING.value,
                    recipient_type=RECIPIENT_OWNER,
                    recipient_id=owner_id,
                    notification_type="no_staff_available",
                    title="No staff available",
                    message=f"Order {order.order_number} is queued: no staff member is online with capacity",
                    payload=_payload(order, queued=True),
                    priority="urgent",
                    assignment_round=order.assignment_round,
                )
            return
        if owner_id:
            yield dict(
                event=OrderStatus.PENDING.value,
                recipient_type=RECIPIENT_OWNER,
                recipient_id=owner_id,
                notification_type="new_order",
                title=f"New order {order.order_number}",
                message=f"Order {order.order_number} was placed and is waiting for staff",
                payload=_payload(order, eligible_staff_ids=list(eligible_staff_ids)),
                assignment_round=order.assignment_round,
            )

    sent = _fanout("order created", order, _deliveries())
    if not queued:
        sent.extend(notify_new_order(order, eligible_staff_ids))
    return sent


def notify_claimed(order: Order) -> list[Notification]:
    """order_assigned to the claiming staff and owner; status_changed to the customer."""
    owner_id = _owner_id(order)
    staff_name = order.assigned_staff.display_name if order.assigned_staff else None

    def _deliveries():
        common = dict(event=OrderStatus.ASSIGNED.value, assignment_round=order.assignment_round)
        yield dict(
            common,
            recipient_type=RECIPIENT_STAFF,
            recipient_id=order.assigned_staff_id,
            notification_type="order_assigned",
            title=f"Order {order.order_number} is yours",
            message=f"You claimed order {order.order_number}",
            payload=_payload(order),
        )
        if owner_id:
            yield dict(
                common,
                recipient_type=RECIPIENT_OWNER,
                recipient_id=owner_id,
                notification_type="order_assigned",
                title=f"Order {order.order_number} assigned",
                message=f"Order {order.order_number} was claimed by {staff_name or 'staff'}",
                payload=_payload(order, staff_id=order.assigned_staff_id, staff_name=staff_name),
            )
        if order.session_id:
            yield dict(
                common,
                recipient_type=RECIPIENT_CUSTOMER,
                recipient_id=order.session_id,
                notification_type="status_changed",
                title="Order update",
                message=f"Your order {order.order_number} was {STATUS_LABELS[OrderStatus.ASSIGNED]}",
                payload=_payload(order, previous_status=OrderStatus.PENDING.value),
            )

    return _fanout("claim", order, _deliveries())


def notify_status_changed(order: Order, previous_status, staff_id: int | None = None) -> list[Notification]:
    """
    status_changed to the customer session and owner. The owner's copy for
    preparing is typed order_accepted. staff_id, when given, also gets a
    copy (used for cancellations of an assigned order).
    """
    status = OrderStatus.parse(order.status)
    previous = OrderStatus.parse(previous_status).value if previous_status else None
    owner_id = _owner_id(order)
    label = STATUS_LABELS[status]

    def _deliveries():
        common = dict(event=status.value, assignment_round=order.assignment_round)
        if order.session_id:
            yield dict(
                common,
                recipient_type=RECIPIENT_CUSTOMER,
                recipient_id=order.session_id,
                notification_type="status_changed",
                title="Order update",
                message=f"Your order {order.order_number} is {label}",
                payload=_payload(order, previous_status=previous),
            )
        if owner_id:
            accepted = status == OrderStatus.PREPARING
            yield dict(
                common,
                recipient_type=RECIPIENT_OWNER,
                recipient_id=owner_id,
                notification_type="order_accepted" if accepted else "status_changed",
                title=f"Order {order.order_number} {label}",
                message=f"Order {order.order_number} is {label}",
                payload=_payload(order, previous_status=previous),
                priority="high" if status == OrderStatus.CANCELLED else "normal",
            )
        if staff_id is not None:
            yield dict(
                common,
                recipient_type=RECIPIENT_STAFF,
                recipient_id=staff_id,
                notification_type="status_changed",
                title=f"Order {order.order_number} {label}",
                message=f"Order {order.order_number} is {label}",
                payload=_payload(order, previous_status=previous),
                priority="high",
            )

    return _fanout("status change", order, _deliveries())


def notify_released(order: Order, staff_id: int, reason: str = "") -> list[Notification]:
    """order_rejected to the owner when a staff member hands an order back."""
    owner_id = _owner_id(order)
    if not owner_id:
        return []

    deliveries = [dict(
        event="released",
        recipient_type=RECIPIENT_OWNER,
        recipient_id=owner_id,
        notification_type="order_rejected",
        title=f"Order {order.order_number} released",
        message=f"Order {order.order_number} was released by staff" + (f": {reason}" if reason else ""),
        payload=_payload(order, staff_id=staff_id, reason=reason or None),
        priority="high",
        assignment_round=order.assignment_round,
    )]
    return _fanout("release", order, deliveries)


# =============================================================================
# Recipient reads
# =============================================================================

def list_for_recipient(
    recipient_type: str,
    recipient_id,
    *,
    unread_only: bool = False,
    limit: int = 100,
) -> list[Notification]:
    query = db.session.query(Notification).filter(
        Notification.recipient_type == recipient_type,
        Notification.recipient_id == str(recipient_id),
        Notification.expires_at > utcnow(),
    )
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_read(notification_id: int, recipient_type: str, recipient_id) -> Notification:
    notification = db.session.get(Notification, notification_id)
    if (
        notification is None
        or notification.recipient_type != recipient_type
        or notification.recipient_id != str(recipient_id)
    ):
        raise NotFoundError("Notification not found")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.session.commit()
    return notification


def mark_all_read(recipient_type: str, recipient_id) -> int:
    result = db.session.execute(
        update(Notification)
        .where(
            Notification.recipient_type == recipient_type,
            Notification.recipient_id == str(recipient_id),
            Notification.is_read.is_(False),
        )
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount


def purge_expired(now: datetime | None = None) -> int:
    """Delete notifications past their retention window."""
    cutoff = now or utcnow()
    deleted = db.session.query(Notification).filter(
        Notification.expires_at <= cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
