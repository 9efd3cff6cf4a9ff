# Overview: Order Queue; priority-then-age ordering of orders nobody could take, with advisory wait estimates.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func, or_

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderQueueEntry
from ..models.queue import PRIORITY_LEVELS
from ..time_utils import ceil_minutes, minutes_between, utcnow


def _priority_level(priority: str) -> int:
    level = PRIORITY_LEVELS.get((priority or "").strip().lower())
    if level is None:
        raise ValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(PRIORITY_LEVELS)}"
        )
    return level


def _ordered(restaurant_id: int):
    return (
        db.session.query(OrderQueueEntry)
        .filter(OrderQueueEntry.restaurant_id == restaurant_id)
        .order_by(
            OrderQueueEntry.priority_level.desc(),
            OrderQueueEntry.created_at.asc(),
            OrderQueueEntry.id.asc(),
        )
    )


def get_entry(order_id: int) -> OrderQueueEntry | None:
    return db.session.query(OrderQueueEntry).filter_by(order_id=order_id).one_or_none()


def enqueue(order: Order, priority: str = "normal") -> OrderQueueEntry:
    """
    Queue an order. Idempotent: an order already queued keeps its entry
    (and its place). Flushes, does not commit.
    """
    existing = get_entry(order.id)
    if existing is not None:
        return existing

    entry = OrderQueueEntry(
        restaurant_id=order.restaurant_id,
        order_id=order.id,
        priority_level=_priority_level(priority),
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    refresh_estimates(order.restaurant_id)
    return entry


def dequeue(order_id: int) -> bool:
    """Drop an order's entry (claimed or closed). Returns whether one existed."""
    deleted = (
        db.session.query(OrderQueueEntry)
        .filter(OrderQueueEntry.order_id == order_id)
        .delete(synchronize_session="fetch")
    )
    return deleted > 0


def queue_head(restaurant_id: int) -> OrderQueueEntry | None:
    return _ordered(restaurant_id).first()


def list_queue(restaurant_id: int) -> list[dict]:
    """Queued orders in dequeue order with 1-based position and estimated wait."""
    entries = _ordered(restaurant_id).all()
    if not entries:
        return []
    average = average_recent_fulfillment_minutes(restaurant_id)
    rows = []
    for position, entry in enumerate(entries, start=1):
        row = entry.to_dict(position=position)
        row["estimated_wait_minutes"] = ceil_minutes(average * position)
        rows.append(row)
    return rows


def set_priority(order_id: int, priority: str) -> OrderQueueEntry:
    """Owner escalation. Moves the entry within the queue, keeps its age."""
    entry = get_entry(order_id)
    if entry is None:
        raise NotFoundError("Order is not queued", details={"order_id": order_id})

    entry.priority_level = _priority_level(priority)
    db.session.flush()
    refresh_estimates(entry.restaurant_id)
    db.session.commit()
    return entry


def average_recent_fulfillment_minutes(restaurant_id: int) -> float:
    """
    Mean created -> served/delivered time over the most recent fulfilled
    orders; the configured default when there is no history yet.
    """
    sample_size = current_app.config.get("QUEUE_FULFILLMENT_SAMPLE_SIZE", 20)
    fulfilled_at = func.coalesce(Order.served_at, Order.delivered_at)
    rows = (
        db.session.query(Order.created_at, Order.served_at, Order.delivered_at)
        .filter(
            Order.restaurant_id == restaurant_id,
            or_(Order.served_at.isnot(None), Order.delivered_at.isnot(None)),
        )
        .order_by(fulfilled_at.desc())
        .limit(sample_size)
        .all()
    )

    durations = [
        minutes
        for minutes in (minutes_between(created, served or delivered) for created, served, delivered in rows)
        if minutes is not None
    ]
    if not durations:
        return float(current_app.config.get("QUEUE_DEFAULT_FULFILLMENT_MINUTES", 20))
    return sum(durations) / len(durations)


def refresh_estimates(restaurant_id: int) -> list[OrderQueueEntry]:
    """Store estimated_wait = average * position on every entry. Advisory only."""
    entries = _ordered(restaurant_id).all()
    if not entries:
        return entries
    average = average_recent_fulfillment_minutes(restaurant_id)
    for position, entry in enumerate(entries, start=1):
        entry.estimated_wait_minutes = ceil_minutes(average * position)
    db.session.flush()
    return entries
