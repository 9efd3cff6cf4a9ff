from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


RECIPIENT_CUSTOMER = "customer_session"
RECIPIENT_STAFF = "staff"
RECIPIENT_OWNER = "owner"
RECIPIENT_TYPES = {RECIPIENT_CUSTOMER, RECIPIENT_STAFF, RECIPIENT_OWNER}

NOTIFICATION_TYPES = {
    "new_order",
    "order_assigned",
    "order_accepted",
    "order_rejected",
    "no_staff_available",
    "status_changed",
}


class Notification(db.Model):
    """
    Typed notification for a customer session, staff member or owner.

    Only is_read/read_at change after insert. dedupe_key is unique so that
    redelivering the same transition to the same recipient is a no-op.
    Rows past expires_at are hidden from reads and purged by maintenance.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
        db.Index("ix_notifications_recipient", "recipient_type", "recipient_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    recipient_type = db.Column(db.String(24), nullable=False)
    recipient_id = db.Column(db.String(64), nullable=False)

    notification_type = db.Column(db.String(32), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    priority = db.Column(db.String(16), nullable=False, default="normal")  # low, normal, high, urgent

    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    dedupe_key = db.Column(db.String(191), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "order_id": self.order_id,
            "recipient_type": self.recipient_type,
            "recipient_id": self.recipient_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "payload": self.payload or {},
            "priority": self.priority,
            "is_read": self.is_read,
            "read_at": to_utc_z(self.read_at),
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
        }
