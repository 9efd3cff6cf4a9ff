from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PRIORITY_LEVELS = {"normal": 1, "high": 2, "urgent": 3}
PRIORITY_NAMES = {level: name for name, level in PRIORITY_LEVELS.items()}


class OrderQueueEntry(db.Model):
    """
    Placeholder for an order nobody could take when it was placed.

    Position is not stored: it is derived from (priority_level DESC,
    created_at ASC, id ASC) so urgent sorts ahead of high ahead of normal,
    FIFO within a tier. The row is deleted when the order is claimed or
    reaches a terminal state.
    """
    __tablename__ = "order_queue"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_order_queue_order"),
        db.Index("ix_order_queue_restaurant_priority", "restaurant_id", "priority_level", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    priority_level = db.Column(db.Integer, nullable=False, default=1)
    estimated_wait_minutes = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    order = db.relationship("Order")

    @property
    def priority(self) -> str:
        return PRIORITY_NAMES.get(self.priority_level, "normal")

    def to_dict(self, position: int | None = None) -> dict:
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "order_id": self.order_id,
            "order_number": self.order.order_number if self.order else None,
            "priority": self.priority,
            "position": position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "created_at": to_utc_z(self.created_at),
        }
