# Overview: Analytics Aggregator; pull-based revenue, commission and operational metrics over order windows.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import and_, case, func, or_

from ..errors import ValidationError
from ..extensions import db
from ..models import Order, OrderStatus, Restaurant, StaffMember
from ..models.orders import ACTIVE_STATUSES, FULFILLED_STATUSES
from ..time_utils import parse_iso_datetime
from .order_service import apply_bps


PERIOD_FORMATS = {
    "day": "%Y-%m-%d",
    "week": "%Y-W%W",
    "month": "%Y-%m",
}

_fulfilled_at = func.coalesce(Order.served_at, Order.delivered_at)


def _parse_range(start, end) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if isinstance(start, str) else start
        end_dt = parse_iso_datetime(end) if isinstance(end, str) else end
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 dates")
    if start_dt and end_dt and end_dt < start_dt:
        raise ValidationError("end must not be before start")
    return start_dt, end_dt


def _commission_bps(commission_bps: int | None) -> int:
    if commission_bps is None:
        return int(current_app.config.get("PLATFORM_COMMISSION_BPS", 300))
    if isinstance(commission_bps, bool) or not isinstance(commission_bps, int) or not 0 <= commission_bps <= 10000:
        raise ValidationError("commission_bps must be an integer between 0 and 10000")
    return commission_bps


def revenue_clause():
    """Fulfilled or paid, and never cancelled."""
    return and_(
        Order.status != OrderStatus.CANCELLED,
        or_(Order.status.in_(FULFILLED_STATUSES), Order.payment_status == "completed"),
    )


def _window(query, restaurant_id: int | None, start, end):
    start_dt, end_dt = _parse_range(start, end)
    if restaurant_id is not None:
        query = query.filter(Order.restaurant_id == restaurant_id)
    if start_dt is not None:
        query = query.filter(Order.created_at >= start_dt)
    if end_dt is not None:
        query = query.filter(Order.created_at < end_dt)
    return query


def _minutes(start_col, end_col):
    return (func.julianday(end_col) - func.julianday(start_col)) * 1440.0


def _round_minutes(value) -> float | None:
    return round(float(value), 1) if value is not None else None


def _average_cents(total: int, count: int) -> int:
    if not count:
        return 0
    return (2 * total + count) // (2 * count)


def _revenue_columns():
    return (
        func.count(Order.id).label("order_count"),
        func.coalesce(func.sum(Order.total_cents), 0).label("revenue_cents"),
        func.coalesce(func.sum(Order.tip_cents), 0).label("tips_cents"),
    )


def _totals(row, bps: int) -> dict:
    gross = int(row.revenue_cents or 0)
    commission = apply_bps(gross, bps)
    return {
        "order_count": int(row.order_count or 0),
        "revenue_cents": gross,
        "tips_cents": int(row.tips_cents or 0),
        "commission_cents": commission,
        "net_cents": gross - commission,
    }


def revenue_summary(
    *,
    restaurant_id: int | None = None,
    start=None,
    end=None,
    commission_bps: int | None = None,
) -> dict:
    """
    Revenue, commission and order-state counts for one restaurant (or the
    whole platform when restaurant_id is None) over a created_at window.

    Side-effect free. Null amounts count as zero.
    """
    bps = _commission_bps(commission_bps)

    revenue_row = _window(
        db.session.query(
            *_revenue_columns(),
            func.coalesce(func.sum(Order.tax_cents), 0).label("tax_cents"),
            func.avg(_minutes(Order.created_at, _fulfilled_at)).label("fulfillment_minutes"),
        ),
        restaurant_id, start, end,
    ).filter(revenue_clause()).one()
    totals = _totals(revenue_row, bps)

    status_rows = _window(
        db.session.query(Order.status, func.count(Order.id)),
        restaurant_id, start, end,
    ).group_by(Order.status).all()
    by_status = {OrderStatus.parse(status): int(count) for status, count in status_rows}

    method = func.coalesce(Order.payment_method, "unknown")
    method_rows = _window(
        db.session.query(
            method.label("method"),
            func.count(Order.id).label("order_count"),
            func.coalesce(func.sum(Order.total_cents), 0).label("amount_cents"),
        ),
        restaurant_id, start, end,
    ).filter(revenue_clause()).group_by(method).order_by(method).all()

    return {
        "restaurant_id": restaurant_id,
        "commission_bps": bps,
        "total_revenue_cents": totals["revenue_cents"],
        "tips_cents": totals["tips_cents"],
        "tax_cents": int(revenue_row.tax_cents or 0),
        "commission_cents": totals["commission_cents"],
        "net_revenue_cents": totals["net_cents"],
        "revenue_order_count": totals["order_count"],
        "order_count": sum(by_status.values()),
        "active_orders": sum(by_status.get(s, 0) for s in ACTIVE_STATUSES),
        "completed_orders": sum(by_status.get(s, 0) for s in FULFILLED_STATUSES),
        "cancelled_orders": by_status.get(OrderStatus.CANCELLED, 0),
        "average_order_value_cents": _average_cents(totals["revenue_cents"], totals["order_count"]),
        "average_fulfillment_minutes": _round_minutes(revenue_row.fulfillment_minutes),
        "payment_methods": {
            row.method: {"count": int(row.order_count), "amount_cents": int(row.amount_cents or 0)}
            for row in method_rows
        },
    }


def revenue_timeline(
    *,
    restaurant_id: int | None = None,
    start=None,
    end=None,
    group_by: str = "day",
    commission_bps: int | None = None,
) -> list[dict]:
    fmt = PERIOD_FORMATS.get(group_by)
    if fmt is None:
        raise ValidationError("group_by must be day, week, or month")
    bps = _commission_bps(commission_bps)

    period_expr = func.strftime(fmt, Order.created_at)
    rows = _window(
        db.session.query(period_expr.label("period"), *_revenue_columns()),
        restaurant_id, start, end,
    ).filter(revenue_clause()).group_by("period").order_by("period").all()

    return [dict(period=row.period, **_totals(row, bps)) for row in rows]


def restaurant_breakdown(
    *,
    start=None,
    end=None,
    limit: int = 10,
    commission_bps: int | None = None,
) -> list[dict]:
    """Platform-wide: restaurants ranked by revenue in the window."""
    bps = _commission_bps(commission_bps)
    revenue = func.coalesce(func.sum(Order.total_cents), 0)

    rows = _window(
        db.session.query(
            Order.restaurant_id.label("restaurant_id"),
            Restaurant.name.label("restaurant_name"),
            *_revenue_columns(),
        ).join(Restaurant, Restaurant.id == Order.restaurant_id),
        None, start, end,
    ).filter(revenue_clause()).group_by(
        Order.restaurant_id, Restaurant.name,
    ).order_by(revenue.desc(), Order.restaurant_id.asc()).limit(limit).all()

    return [
        dict(restaurant_id=row.restaurant_id, restaurant_name=row.restaurant_name, **_totals(row, bps))
        for row in rows
    ]


def staff_performance(restaurant_id: int, *, start=None, end=None) -> list[dict]:
    """Per staff member: orders handled, fulfilled, cancelled, service time and tips."""
    is_fulfilled = Order.status.in_(FULFILLED_STATUSES)
    rows = _window(
        db.session.query(
            Order.assigned_staff_id.label("staff_id"),
            func.count(Order.id).label("handled"),
            func.sum(case((is_fulfilled, 1), else_=0)).label("fulfilled"),
            func.sum(case((Order.status == OrderStatus.CANCELLED, 1), else_=0)).label("cancelled"),
            func.avg(case((is_fulfilled, _minutes(Order.assigned_at, _fulfilled_at)))).label("service_minutes"),
            func.coalesce(func.sum(case((is_fulfilled, Order.tip_cents), else_=0)), 0).label("tips_cents"),
            func.coalesce(func.sum(case((is_fulfilled, Order.total_cents), else_=0)), 0).label("revenue_cents"),
        ),
        restaurant_id, start, end,
    ).filter(Order.assigned_staff_id.isnot(None)).group_by(Order.assigned_staff_id).all()
    by_staff = {row.staff_id: row for row in rows}

    staff_members = (
        db.session.query(StaffMember)
        .filter(StaffMember.restaurant_id == restaurant_id)
        .order_by(StaffMember.id.asc())
        .all()
    )

    results = []
    for staff in staff_members:
        row = by_staff.get(staff.id)
        results.append({
            "staff_id": staff.id,
            "display_name": staff.display_name,
            "performance_rating": float(staff.performance_rating) if staff.performance_rating is not None else None,
            "orders_handled": int(row.handled) if row else 0,
            "orders_fulfilled": int(row.fulfilled or 0) if row else 0,
            "orders_cancelled": int(row.cancelled or 0) if row else 0,
            "average_service_minutes": _round_minutes(row.service_minutes) if row else None,
            "tips_cents": int(row.tips_cents or 0) if row else 0,
            "revenue_cents": int(row.revenue_cents or 0) if row else 0,
        })
    results.sort(key=lambda r: (-r["orders_fulfilled"], r["staff_id"]))
    return results
