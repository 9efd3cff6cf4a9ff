from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Restaurant(db.Model):
    """
    Tenant root for orders, staff and analytics.

    owner_id is the identity the surrounding application authenticates the
    owner as; this subsystem only compares it, it never issues it.
    """
    __tablename__ = "restaurants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    owner_id = db.Column(db.String(64), nullable=False, index=True)

    # Prefix for human-readable order numbers (e.g. "ORD-0001")
    order_prefix = db.Column(db.String(8), nullable=False, default="ORD")

    # Default tax when an order is placed without an explicit tax amount
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    # Automatic assignment mode: the engine picks the staff member
    auto_assign = db.Column(db.Boolean, nullable=False, default=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "order_prefix": self.order_prefix,
            "tax_rate_bps": self.tax_rate_bps,
            "auto_assign": self.auto_assign,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class StaffMember(db.Model):
    """Staff member who can claim and progress orders for one restaurant."""
    __tablename__ = "staff_members"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False, index=True)
    display_name = db.Column(db.String(120), nullable=False)

    # Highest rating wins automatic assignment (ties: lower load, earlier record)
    performance_rating = db.Column(db.Numeric(3, 2), nullable=False, default=5)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    restaurant = db.relationship("Restaurant", backref=db.backref("staff_members", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "display_name": self.display_name,
            "performance_rating": float(self.performance_rating) if self.performance_rating is not None else None,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
