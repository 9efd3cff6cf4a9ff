# Overview: Order Store; creation, lookup, conditional status writes and item edits.

"""
Order Store

The single source of truth for order state. Owns Order and OrderItem rows.

MONEY:
- Every amount is integer cents.
- total_cents == subtotal_cents + tax_cents + tip_cents on creation and after
  every item change; a caller-supplied subtotal/total that disagrees with the
  computed one is rejected, never corrected.
- Tax is either an explicit amount (kept as-is across item edits) or derived
  from the restaurant rate (tax_rate_bps snapshot, recomputed on item edits).

STATUS WRITES:
- conditional_update_status() is the only way status changes. It issues one
  UPDATE ... WHERE id = ? AND status = ? and raises ConflictError when no row
  matched. It never commits; the caller owns the transaction.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..actors import Actor, require_order_participant
from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, OrderSequence, OrderStatus, Restaurant
from ..models.orders import ORDER_TYPES, PAYMENT_METHODS
from ..time_utils import to_utc_z, utcnow
from .concurrency import run_with_retry


# $9,999,999.99
MAX_PRICE_CENTS = 999_999_999
MAX_LINE_QUANTITY = 999

EDITABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.ASSIGNED)

# Sentinel: conditional_update_status does not constrain assigned_staff_id
ANY_STAFF = object()


# =============================================================================
# Validation helpers
# =============================================================================

def _require_int(value, field: str, *, minimum: int = 0, maximum: int | None = None) -> int:
    # bool is an int subclass; "1.5" and 1.5 are not integers
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            value = int(value.strip())
        else:
            raise ValidationError(f"{field} must be an integer", details={"field": field})
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", details={"field": field})
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field} must be at most {maximum}", details={"field": field})
    return value


def _normalize_item(raw: dict, index: int) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{index}] must be an object")

    name = (raw.get("item_name") or raw.get("name") or "").strip()
    if not name:
        raise ValidationError(f"items[{index}].item_name is required")

    quantity = _require_int(
        raw.get("quantity"), f"items[{index}].quantity", minimum=1, maximum=MAX_LINE_QUANTITY
    )
    unit_price = _require_int(
        raw.get("unit_price_cents"), f"items[{index}].unit_price_cents", minimum=0, maximum=MAX_PRICE_CENTS
    )

    menu_item_id = raw.get("menu_item_id")
    if menu_item_id is not None:
        menu_item_id = _require_int(menu_item_id, f"items[{index}].menu_item_id", minimum=1)

    note = raw.get("note")
    if note is not None:
        note = str(note).strip()[:255] or None

    return {
        "menu_item_id": menu_item_id,
        "item_name": name[:160],
        "quantity": quantity,
        "unit_price_cents": unit_price,
        "line_total_cents": quantity * unit_price,
        "note": note,
    }


def _normalize_items(items) -> list[dict]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("An order needs at least one item")
    return [_normalize_item(raw, i) for i, raw in enumerate(items)]


def apply_bps(amount_cents: int, bps: int) -> int:
    """amount * bps / 10000, rounded half up to the cent."""
    return (int(amount_cents or 0) * int(bps or 0) + 5000) // 10000


def _check_totals(order: Order) -> None:
    expected = (order.subtotal_cents or 0) + (order.tax_cents or 0) + (order.tip_cents or 0)
    if order.total_cents != expected:
        raise ValidationError(
            "Order total does not equal subtotal + tax + tip",
            details={
                "subtotal_cents": order.subtotal_cents,
                "tax_cents": order.tax_cents,
                "tip_cents": order.tip_cents,
                "total_cents": order.total_cents,
            },
        )


def _recalculate(order: Order) -> None:
    order.subtotal_cents = sum(item.line_total_cents for item in order.items)
    if order.tax_rate_bps is not None:
        order.tax_cents = apply_bps(order.subtotal_cents, order.tax_rate_bps)
    order.total_cents = order.subtotal_cents + order.tax_cents + order.tip_cents
    order.estimated_preparation_minutes = estimate_preparation_minutes(order.items)
    _check_totals(order)


def estimate_preparation_minutes(items) -> int:
    """Kitchen estimate: base minutes plus a fixed amount per unit ordered."""
    total_quantity = 0
    for item in items:
        quantity = item["quantity"] if isinstance(item, dict) else item.quantity
        total_quantity += int(quantity or 0)
    base = current_app.config.get("ORDER_BASE_PREP_MINUTES", 10)
    per_item = current_app.config.get("ORDER_PREP_MINUTES_PER_ITEM", 3)
    return base + per_item * total_quantity


# =============================================================================
# Order numbers
# =============================================================================

def next_order_number(restaurant: Restaurant, pad: int = 4) -> str:
    """
    Allocate the next human-readable order number for a restaurant.

    The counter row is bumped with a single UPDATE; the first order of a
    restaurant inserts the row and falls back to the UPDATE if another
    request inserted it first.
    """
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.restaurant_id == restaurant.id)
        .values(next_number=OrderSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(OrderSequence(restaurant_id=restaurant.id, next_number=2))
            return f"{restaurant.order_prefix}-{1:0{pad}d}"
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(OrderSequence.next_number)
        .filter_by(restaurant_id=restaurant.id)
        .scalar()
    )
    return f"{restaurant.order_prefix}-{current - 1:0{pad}d}"


# =============================================================================
# Create / read
# =============================================================================

def create_order(
    restaurant_id: int,
    items,
    *,
    session_id: str | None = None,
    table_id: int | None = None,
    order_type: str = "dine_in",
    payment_method: str = "cash",
    tip_cents: int = 0,
    tax_cents: int | None = None,
    subtotal_cents: int | None = None,
    total_cents: int | None = None,
    customer_name: str | None = None,
    special_instructions: str | None = None,
    commit: bool = True,
) -> Order:
    """
    Validate and persist a new pending order with its items.

    Raises:
        NotFoundError: restaurant missing or inactive
        ValidationError: bad item, bad money field, or totals that don't add up
    """
    restaurant = db.session.get(Restaurant, restaurant_id)
    if restaurant is None or not restaurant.is_active:
        raise NotFoundError("Restaurant not found")

    if order_type not in ORDER_TYPES:
        raise ValidationError(
            f"Invalid order_type '{order_type}'. Must be one of: {', '.join(sorted(ORDER_TYPES))}"
        )
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment_method '{payment_method}'. Must be one of: {', '.join(sorted(PAYMENT_METHODS))}"
        )

    lines = _normalize_items(items)
    subtotal = sum(line["line_total_cents"] for line in lines)
    tip = _require_int(tip_cents or 0, "tip_cents", maximum=MAX_PRICE_CENTS)

    if tax_cents is None:
        rate_snapshot = restaurant.tax_rate_bps or 0
        tax = apply_bps(subtotal, rate_snapshot)
    else:
        rate_snapshot = None
        tax = _require_int(tax_cents, "tax_cents", maximum=MAX_PRICE_CENTS)

    if subtotal_cents is not None and _require_int(subtotal_cents, "subtotal_cents") != subtotal:
        raise ValidationError(
            "subtotal_cents does not match the sum of the items",
            details={"expected": subtotal, "received": subtotal_cents},
        )
    if total_cents is not None and _require_int(total_cents, "total_cents") != subtotal + tax + tip:
        raise ValidationError(
            "total_cents must equal subtotal + tax + tip",
            details={"expected": subtotal + tax + tip, "received": total_cents},
        )

    def _op() -> Order:
        now = utcnow()
        order = Order(
            restaurant_id=restaurant.id,
            order_number=next_order_number(restaurant),
            table_id=table_id,
            session_id=session_id,
            customer_name=(customer_name or "").strip() or None,
            order_type=order_type,
            special_instructions=(special_instructions or "").strip() or None,
            estimated_preparation_minutes=estimate_preparation_minutes(lines),
            subtotal_cents=subtotal,
            tax_cents=tax,
            tax_rate_bps=rate_snapshot,
            tip_cents=tip,
            total_cents=subtotal + tax + tip,
            status=OrderStatus.PENDING,
            payment_method=payment_method,
            payment_status="pending",
            created_at=now,
            updated_at=now,
        )
        for line in lines:
            order.items.append(OrderItem(created_at=now, **line))

        _check_totals(order)
        db.session.add(order)
        db.session.flush()
        if commit:
            db.session.commit()
        return order

    return run_with_retry(_op)


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def get_order_by_number(restaurant_id: int, order_number: str) -> Order:
    """Look up an order by its human-readable number within one restaurant."""
    number = (order_number or "").strip()
    order = None
    if number:
        order = db.session.query(Order).filter(
            Order.restaurant_id == restaurant_id,
            Order.order_number == number,
        ).first()
    if order is None:
        raise NotFoundError("Order not found", details={"order_number": order_number})
    return order


def tracking_steps(order: Order) -> list[dict]:
    """Customer-facing progress; a step is done once its timestamp is written."""
    fulfilled = "Delivered" if order.delivered_at else "Served"
    steps = [
        ("placed", "Order placed", order.created_at),
        ("assigned", "Assigned to staff", order.assigned_at),
        ("preparing", "Preparing", order.preparing_at),
        ("ready", "Ready", order.ready_at),
        (fulfilled.lower(), fulfilled, order.fulfilled_at),
        ("completed", "Completed", order.completed_at),
    ]
    if OrderStatus.parse(order.status) == OrderStatus.CANCELLED:
        steps.append(("cancelled", "Cancelled", order.cancelled_at))
    return [
        {"id": step_id, "title": title, "completed": at is not None, "timestamp": to_utc_z(at)}
        for step_id, title, at in steps
    ]


def list_orders(
    *,
    restaurant_id: int | None = None,
    statuses=None,
    assigned_staff_id: int | None = None,
    session_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 200,
) -> list[Order]:
    query = db.session.query(Order)
    if restaurant_id is not None:
        query = query.filter(Order.restaurant_id == restaurant_id)
    if statuses:
        query = query.filter(Order.status.in_([OrderStatus.parse(s) for s in statuses]))
    if assigned_staff_id is not None:
        query = query.filter(Order.assigned_staff_id == assigned_staff_id)
    if session_id is not None:
        query = query.filter(Order.session_id == session_id)
    if start is not None:
        query = query.filter(Order.created_at >= start)
    if end is not None:
        query = query.filter(Order.created_at < end)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def order_summary(order: Order) -> dict:
    data = order.to_dict(include_items=True)
    data["assigned_staff_name"] = order.assigned_staff.display_name if order.assigned_staff else None
    return data


# =============================================================================
# Conditional status write
# =============================================================================

def conditional_update_status(
    order_id: int,
    expected_status: OrderStatus,
    new_status: OrderStatus,
    fields: dict | None = None,
    *,
    expected_staff_id=ANY_STAFF,
) -> Order:
    """
    Compare-and-swap the status of one order.

    Emits a single UPDATE whose WHERE clause carries the expected status (and,
    when given, the expected assigned_staff_id; None means "unassigned").
    Exactly one matched row is success; anything else raises ConflictError
    and nothing is written.

    Does NOT commit. The caller commits (or rolls back) together with any
    other write that belongs to the same transition.
    """
    expected_status = OrderStatus.parse(expected_status)
    new_status = OrderStatus.parse(new_status)

    values = dict(fields or {})
    values["status"] = new_status
    values.setdefault("updated_at", utcnow())

    stmt = update(Order).where(Order.id == order_id, Order.status == expected_status)
    if expected_staff_id is None:
        stmt = stmt.where(Order.assigned_staff_id.is_(None))
    elif expected_staff_id is not ANY_STAFF:
        stmt = stmt.where(Order.assigned_staff_id == expected_staff_id)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise ConflictError(
            details={"order_id": order_id, "expected_status": expected_status.value}
        )

    return db.session.get(Order, order_id, populate_existing=True)


# =============================================================================
# Item mutation (pending / assigned only)
# =============================================================================

def _editable_order(order_id: int, actor: Actor) -> Order:
    order = get_order(order_id)
    require_order_participant(actor, order)
    if OrderStatus.parse(order.status) not in EDITABLE_STATUSES:
        raise ConflictError(
            "Items can only be changed before preparation starts",
            details={"order_id": order.id, "status": OrderStatus.parse(order.status).value},
        )
    return order


def _commit_item_change(order: Order) -> Order:
    """
    Write recalculated totals only while the order is still editable.

    The item rows are flushed first; the totals go out in one UPDATE whose
    WHERE clause carries the editable statuses, so an order that moved to
    preparing after the read rolls the whole edit back.
    """
    order_id = order.id
    _recalculate(order)
    db.session.flush()

    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(EDITABLE_STATUSES))
        .values(
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            total_cents=order.total_cents,
            estimated_preparation_minutes=order.estimated_preparation_minutes,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise ConflictError(
            "Items can only be changed before preparation starts",
            details={"order_id": order_id},
        )

    db.session.commit()
    return order


def _get_item(order: Order, item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFoundError("Order item not found", details={"order_id": order.id, "item_id": item_id})


def add_item(order_id: int, actor: Actor, item: dict) -> Order:
    order = _editable_order(order_id, actor)
    line = _normalize_item(item, len(order.items))
    order.items.append(OrderItem(created_at=utcnow(), **line))
    return _commit_item_change(order)


def update_item_quantity(order_id: int, actor: Actor, item_id: int, quantity) -> Order:
    order = _editable_order(order_id, actor)
    item = _get_item(order, item_id)
    item.quantity = _require_int(quantity, "quantity", minimum=1, maximum=MAX_LINE_QUANTITY)
    item.line_total_cents = item.quantity * item.unit_price_cents
    return _commit_item_change(order)


def remove_item(order_id: int, actor: Actor, item_id: int) -> Order:
    order = _editable_order(order_id, actor)
    item = _get_item(order, item_id)
    if len(order.items) == 1:
        raise ValidationError("Cannot remove the last item; cancel the order instead")
    order.items.remove(item)
    return _commit_item_change(order)


# =============================================================================
# Payment (recorded only)
# =============================================================================

def record_payment_failure(order_id: int, actor: Actor, reference: str | None = None) -> Order:
    """Mark the order's payment as failed. Status is untouched."""
    order = get_order(order_id)
    require_order_participant(actor, order)
    if order.payment_status == "completed":
        raise ConflictError("Payment for this order is already completed")

    order.payment_status = "failed"
    if reference:
        order.payment_reference = reference[:128]
    order.updated_at = utcnow()
    db.session.commit()
    return order
