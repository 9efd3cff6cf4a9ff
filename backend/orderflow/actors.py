# Overview: Already-authenticated caller identities and order-level authorization checks.

from __future__ import annotations

from dataclasses import dataclass

from .errors import AuthorizationError, ValidationError


CUSTOMER_SESSION = "customer_session"
STAFF = "staff"
OWNER = "owner"
ADMIN = "admin"

ACTOR_KINDS = {CUSTOMER_SESSION, STAFF, OWNER, ADMIN}


@dataclass(frozen=True)
class Actor:
    """
    Identity handed to the order subsystem by the surrounding application.

    kind is one of customer_session, staff, owner, admin. id is the session
    id, staff member id, owner identity or admin identity respectively.
    No authentication happens here; only the per-order entitlement checks.
    """
    kind: str
    id: str

    def __post_init__(self):
        if self.kind not in ACTOR_KINDS:
            raise ValidationError(
                f"Invalid actor type '{self.kind}'. Must be one of: {', '.join(sorted(ACTOR_KINDS))}"
            )
        if self.id is None or not str(self.id).strip():
            raise ValidationError("actor id is required")
        object.__setattr__(self, "id", str(self.id).strip())

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.id}"

    @property
    def staff_id(self) -> int | None:
        if self.kind != STAFF:
            return None
        try:
            return int(self.id)
        except ValueError:
            return None

    def is_customer_of(self, order) -> bool:
        return self.kind == CUSTOMER_SESSION and order.session_id is not None and order.session_id == self.id

    def is_owner_of(self, restaurant) -> bool:
        return self.kind == OWNER and restaurant is not None and restaurant.owner_id == self.id

    def is_assigned_to(self, order) -> bool:
        return self.staff_id is not None and order.assigned_staff_id == self.staff_id


def require_owner(actor: Actor, restaurant) -> None:
    """Owner of this restaurant, or platform admin."""
    if actor.kind == ADMIN or actor.is_owner_of(restaurant):
        return
    raise AuthorizationError("Only the restaurant owner can do this")


def require_assigned_staff(actor: Actor, order) -> None:
    if not actor.is_assigned_to(order):
        raise AuthorizationError()


def require_order_participant(actor: Actor, order) -> None:
    """Customer who placed the order, its assigned staff, the owner, or an admin."""
    if actor.kind == ADMIN:
        return
    if actor.is_customer_of(order) or actor.is_assigned_to(order) or actor.is_owner_of(order.restaurant):
        return
    raise AuthorizationError()


def can_view_order(actor: Actor, order, staff_restaurant_id: int | None = None) -> bool:
    if actor.kind == ADMIN or actor.is_customer_of(order) or actor.is_owner_of(order.restaurant):
        return True
    return actor.kind == STAFF and staff_restaurant_id == order.restaurant_id


def staff_restaurant_id(actor: Actor) -> int | None:
    """Restaurant an active staff actor works at, else None."""
    if actor.staff_id is None:
        return None
    from .extensions import db
    from .models import StaffMember

    staff = db.session.get(StaffMember, actor.staff_id)
    if staff is None or not staff.is_active:
        return None
    return staff.restaurant_id


def require_restaurant_member(actor: Actor, restaurant) -> None:
    """Owner, admin, or active staff of this restaurant."""
    if actor.kind == ADMIN or actor.is_owner_of(restaurant):
        return
    if actor.kind == STAFF and staff_restaurant_id(actor) == restaurant.id:
        return
    raise AuthorizationError("You do not have access to this restaurant")
