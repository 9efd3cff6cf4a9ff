from __future__ import annotations

import enum

from ..extensions import db
from ..time_utils import to_utc_z


class OrderStatus(str, enum.Enum):
    """
    Order lifecycle states.

    PENDING -> ASSIGNED -> PREPARING -> READY -> SERVED | DELIVERED -> COMPLETED
    Any state before COMPLETED may move to CANCELLED. ASSIGNED may return to
    PENDING only through an explicit release.
    """
    PENDING = "pending"
    ASSIGNED = "assigned"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value) -> "OrderStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid status '{value}'. Must be one of: {', '.join(s.value for s in cls)}"
            )


ACTIVE_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.ASSIGNED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
)
FULFILLED_STATUSES = (OrderStatus.SERVED, OrderStatus.DELIVERED, OrderStatus.COMPLETED)
TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

ORDER_TYPES = {"dine_in", "takeaway", "delivery"}
PAYMENT_METHODS = {"cash", "card", "upi", "online", "counter"}
PAYMENT_STATUSES = {"pending", "completed", "failed"}


class Order(db.Model):
    """
    Customer order placed from a table QR session (or by staff on its behalf).

    MONEY: all amounts in cents; total_cents == subtotal_cents + tax_cents + tip_cents
    is checked on creation and on every item change.

    ASSIGNMENT: assigned_staff_id is only written by the conditional claim
    (status == pending AND assigned_staff_id IS NULL) and only cleared by an
    explicit release. assigned_availability_id points at the day record the
    claim reserved capacity on, so the matching release hits the same counter.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("restaurant_id", "order_number", name="uq_orders_restaurant_number"),
        db.Index("ix_orders_restaurant_status_created", "restaurant_id", "status", "created_at"),
        db.Index("ix_orders_assigned_staff_status", "assigned_staff_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False, index=True)
    order_number = db.Column(db.String(32), nullable=False)

    table_id = db.Column(db.Integer, nullable=True, index=True)
    session_id = db.Column(db.String(64), nullable=True, index=True)
    customer_name = db.Column(db.String(120), nullable=True)
    order_type = db.Column(db.String(16), nullable=False, default="dine_in")
    special_instructions = db.Column(db.Text, nullable=True)
    estimated_preparation_minutes = db.Column(db.Integer, nullable=True)

    # Money (cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=True)  # set when tax was derived from the restaurant rate
    tip_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(
        db.Enum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            length=16,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    # Assignment
    assigned_staff_id = db.Column(db.Integer, db.ForeignKey("staff_members.id"), nullable=True)
    assigned_availability_id = db.Column(db.Integer, db.ForeignKey("staff_availability.id"), nullable=True)
    assignment_round = db.Column(db.Integer, nullable=False, default=0)

    # Payment (recorded, not orchestrated)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_reference = db.Column(db.String(128), nullable=True)

    # Lifecycle timestamps (each written once by the transition that reaches it)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    preparing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    served_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    capacity_released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_by = db.Column(db.String(96), nullable=True)

    restaurant = db.relationship("Restaurant", backref=db.backref("orders", lazy=True))
    assigned_staff = db.relationship("StaffMember", foreign_keys=[assigned_staff_id])
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    @property
    def fulfilled_at(self):
        return self.served_at or self.delivered_at

    @property
    def holds_capacity(self) -> bool:
        return self.assigned_availability_id is not None and self.capacity_released_at is None

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "order_number": self.order_number,
            "table_id": self.table_id,
            "session_id": self.session_id,
            "customer_name": self.customer_name,
            "order_type": self.order_type,
            "special_instructions": self.special_instructions,
            "estimated_preparation_minutes": self.estimated_preparation_minutes,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "tip_cents": self.tip_cents,
            "total_cents": self.total_cents,
            "status": OrderStatus.parse(self.status).value,
            "assigned_staff_id": self.assigned_staff_id,
            "assignment_round": self.assignment_round,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_reference": self.payment_reference,
            "created_at": to_utc_z(self.created_at),
            "assigned_at": to_utc_z(self.assigned_at),
            "preparing_at": to_utc_z(self.preparing_at),
            "ready_at": to_utc_z(self.ready_at),
            "served_at": to_utc_z(self.served_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Line on an order; unit price is a snapshot taken when the line was added."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = db.Column(db.Integer, nullable=True)
    item_name = db.Column(db.String(160), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "menu_item_id": self.menu_item_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "note": self.note,
        }


class OrderSequence(db.Model):
    """Per-restaurant counter backing human-readable order numbers."""
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("restaurant_id", name="uq_order_sequences_restaurant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
