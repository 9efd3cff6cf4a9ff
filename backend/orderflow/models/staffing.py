from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class StaffAvailability(db.Model):
    """
    Per-staff, per-day online flag and open-order workload.

    WRITES: current_count is only ever changed through the conditional
    increment/decrement in staff_service (reserve/release). Nothing reads,
    adds one, and writes back.

    INVARIANT: a reservation is rejected (never clamped) unless
    is_online AND current_count < max_capacity at the moment of the write.
    """
    __tablename__ = "staff_availability"
    __table_args__ = (
        db.UniqueConstraint("staff_id", "business_date", name="uq_staff_availability_staff_day"),
        db.Index("ix_staff_availability_restaurant_day", "restaurant_id", "business_date"),
        db.CheckConstraint("current_count >= 0", name="ck_staff_availability_count_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff_members.id"), nullable=False, index=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False)
    business_date = db.Column(db.Date, nullable=False)

    is_online = db.Column(db.Boolean, nullable=False, default=False)
    current_count = db.Column(db.Integer, nullable=False, default=0)
    max_capacity = db.Column(db.Integer, nullable=False, default=5)

    went_online_at = db.Column(db.DateTime(timezone=True), nullable=True)
    went_offline_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    staff = db.relationship("StaffMember", backref=db.backref("availability_records", lazy=True))

    @property
    def has_capacity(self) -> bool:
        return bool(self.is_online) and self.current_count < self.max_capacity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "staff_id": self.staff_id,
            "restaurant_id": self.restaurant_id,
            "business_date": self.business_date.isoformat() if self.business_date else None,
            "is_online": self.is_online,
            "current_count": self.current_count,
            "max_capacity": self.max_capacity,
            "went_online_at": to_utc_z(self.went_online_at),
            "went_offline_at": to_utc_z(self.went_offline_at),
            "created_at": to_utc_z(self.created_at),
        }
