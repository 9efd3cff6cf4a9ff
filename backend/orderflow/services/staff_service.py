# Overview: Staff Availability Tracker; online flag and conditional workload counter per staff per day.

"""
Staff Availability Tracker

One StaffAvailability row per (staff member, business date). It is the only
writer of current_count, and it only ever writes it with a conditional UPDATE:

    reserve:  SET current_count = current_count + 1
              WHERE is_online AND current_count < max_capacity
    release:  SET current_count = current_count - 1
              WHERE current_count > 0

reserve/release never commit; the assignment engine runs them inside the
same transaction as the order status write so a lost claim leaves no
reservation behind.
"""

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CapacityExceededError,
    NotFoundError,
    StaffUnavailableError,
    ValidationError,
    WorkloadInvariantError,
)
from ..extensions import db, realtime
from ..models import StaffAvailability, StaffMember
from ..realtime import StaffAvailabilityEvent
from ..time_utils import business_date as _business_date, utcnow


def get_staff(staff_id: int) -> StaffMember:
    staff = db.session.get(StaffMember, staff_id)
    if staff is None:
        raise NotFoundError("Staff member not found", details={"staff_id": staff_id})
    return staff


def find_availability(staff_id: int, business_date: date | None = None) -> StaffAvailability | None:
    return (
        db.session.query(StaffAvailability)
        .filter_by(staff_id=staff_id, business_date=business_date or _business_date())
        .one_or_none()
    )


def _default_capacity(staff_id: int) -> int:
    # Carry the owner's last setting forward to a new day
    previous = (
        db.session.query(StaffAvailability.max_capacity)
        .filter(StaffAvailability.staff_id == staff_id)
        .order_by(StaffAvailability.business_date.desc())
        .limit(1)
        .scalar()
    )
    if previous is not None:
        return previous
    return current_app.config.get("STAFF_DEFAULT_MAX_CAPACITY", 5)


def get_or_create_availability(staff_id: int, business_date: date | None = None) -> StaffAvailability:
    """
    Return the availability record for a staff member's day, creating it
    (offline, zero load) if needed. Flushes but does not commit; call it
    before any other write in the transaction.
    """
    day = business_date or _business_date()
    existing = find_availability(staff_id, day)
    if existing is not None:
        return existing

    staff = get_staff(staff_id)
    now = utcnow()
    record = StaffAvailability(
        staff_id=staff.id,
        restaurant_id=staff.restaurant_id,
        business_date=day,
        is_online=False,
        current_count=0,
        max_capacity=_default_capacity(staff.id),
        created_at=now,
        updated_at=now,
    )
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError:
        # Another request created today's record first
        db.session.rollback()
        return find_availability(staff_id, day)
    return record


def announce_availability(availability: StaffAvailability) -> None:
    """Publish the record's current state. Call only after commit."""
    realtime.publish(
        StaffAvailabilityEvent(
            staff_id=availability.staff_id,
            restaurant_id=availability.restaurant_id,
            is_online=bool(availability.is_online),
            current_count=availability.current_count,
            max_capacity=availability.max_capacity,
        )
    )


def set_online(staff_id: int, online: bool) -> StaffAvailability:
    """
    Flip a staff member's online flag for today.

    Going offline leaves already-claimed orders with the staff member; it
    only removes them from eligibility. Every change is announced, and an
    online announcement with spare capacity triggers queue re-evaluation.
    """
    staff = get_staff(staff_id)
    if online and not staff.is_active:
        raise StaffUnavailableError("Inactive staff cannot go online")

    availability = get_or_create_availability(staff_id)
    now = utcnow()
    if bool(availability.is_online) != bool(online):
        availability.is_online = bool(online)
        if online:
            availability.went_online_at = now
        else:
            availability.went_offline_at = now
        availability.updated_at = now
    db.session.commit()

    announce_availability(availability)
    return availability


def reserve(staff_id: int, business_date: date | None = None) -> StaffAvailability:
    """
    Take one unit of the staff member's capacity for today.

    Raises:
        StaffUnavailableError: no record for today, or offline
        CapacityExceededError: current_count already at max_capacity
    """
    availability = find_availability(staff_id, business_date)
    if availability is None:
        raise StaffUnavailableError(details={"staff_id": staff_id})

    stmt = (
        update(StaffAvailability)
        .where(
            StaffAvailability.id == availability.id,
            StaffAvailability.is_online.is_(True),
            StaffAvailability.current_count < StaffAvailability.max_capacity,
        )
        .values(current_count=StaffAvailability.current_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    current = db.session.get(StaffAvailability, availability.id, populate_existing=True)

    if result.rowcount != 1:
        if not current.is_online:
            raise StaffUnavailableError(details={"staff_id": staff_id})
        raise CapacityExceededError(
            details={
                "staff_id": staff_id,
                "current_count": current.current_count,
                "max_capacity": current.max_capacity,
            }
        )
    return current


def release(availability_id: int) -> StaffAvailability:
    """
    Give back one unit of capacity on the record the claim reserved on.

    Raises WorkloadInvariantError when the counter is already zero: that
    means a release without a matching reserve, which is a bug upstream.
    """
    stmt = (
        update(StaffAvailability)
        .where(
            StaffAvailability.id == availability_id,
            StaffAvailability.current_count > 0,
        )
        .values(current_count=StaffAvailability.current_count - 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise WorkloadInvariantError(details={"availability_id": availability_id})
    return db.session.get(StaffAvailability, availability_id, populate_existing=True)


def set_max_capacity(staff_id: int, max_capacity) -> StaffAvailability:
    """Change today's cap. Lowering below the current open count is rejected."""
    if isinstance(max_capacity, bool) or not isinstance(max_capacity, int):
        raise ValidationError("max_capacity must be an integer")
    if max_capacity < 1:
        raise ValidationError("max_capacity must be at least 1")

    availability = get_or_create_availability(staff_id)
    db.session.flush()

    stmt = (
        update(StaffAvailability)
        .where(
            StaffAvailability.id == availability.id,
            StaffAvailability.current_count <= max_capacity,
        )
        .values(max_capacity=max_capacity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        db.session.rollback()
        current = find_availability(staff_id)
        raise ValidationError(
            "max_capacity cannot be lower than the staff member's open orders",
            details={"current_count": current.current_count if current else None},
        )
    db.session.commit()

    availability = db.session.get(StaffAvailability, availability.id, populate_existing=True)
    announce_availability(availability)
    return availability


def eligible_staff(
    restaurant_id: int,
    *,
    exclude_staff_ids=(),
    business_date: date | None = None,
) -> list[StaffAvailability]:
    """
    Online, active staff below capacity today, best candidate first.

    Ranking is deterministic: performance rating desc, open orders asc,
    earliest availability record, then record id.
    """
    query = (
        db.session.query(StaffAvailability)
        .join(StaffMember, StaffMember.id == StaffAvailability.staff_id)
        .filter(
            StaffAvailability.restaurant_id == restaurant_id,
            StaffAvailability.business_date == (business_date or _business_date()),
            StaffAvailability.is_online.is_(True),
            StaffAvailability.current_count < StaffAvailability.max_capacity,
            StaffMember.is_active.is_(True),
        )
    )
    if exclude_staff_ids:
        query = query.filter(StaffAvailability.staff_id.notin_(list(exclude_staff_ids)))

    return query.order_by(
        StaffMember.performance_rating.desc(),
        StaffAvailability.current_count.asc(),
        StaffAvailability.created_at.asc(),
        StaffAvailability.id.asc(),
    ).all()


def staff_workload(restaurant_id: int, business_date: date | None = None) -> list[dict]:
    """Per active staff member: online flag, open/max orders and load percentage."""
    day = business_date or _business_date()
    staff_members = (
        db.session.query(StaffMember)
        .filter_by(restaurant_id=restaurant_id, is_active=True)
        .order_by(StaffMember.display_name.asc(), StaffMember.id.asc())
        .all()
    )
    records = {
        a.staff_id: a
        for a in db.session.query(StaffAvailability)
        .filter_by(restaurant_id=restaurant_id, business_date=day)
        .all()
    }

    default_cap = current_app.config.get("STAFF_DEFAULT_MAX_CAPACITY", 5)
    rows = []
    for staff in staff_members:
        record = records.get(staff.id)
        current = record.current_count if record else 0
        cap = record.max_capacity if record else default_cap
        rows.append({
            "staff_id": staff.id,
            "display_name": staff.display_name,
            "is_online": bool(record.is_online) if record else False,
            "current_count": current,
            "max_capacity": cap,
            "load_percent": round(current * 100 / cap) if cap else 0,
            "has_capacity": bool(record and record.has_capacity),
        })
    return rows
