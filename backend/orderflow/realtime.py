# Overview: Realtime broker; typed in-process publish/subscribe for order, notification and availability events.

"""
In-process publish/subscribe for order, notification and availability events.

Stands in for the datastore's row-level change notifications: the customer,
staff and owner views subscribe to `session:<id>`, `staff:<id>` and
`restaurant:<id>` channels, and the assignment engine subscribes to the
`staff.availability` kind to re-evaluate the queue.

Subscriptions live in `app.extensions`, so every app instance (and every
test app) has its own set.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, DefaultDict, List

from flask import current_app

from .time_utils import utcnow, to_utc_z


EXTENSION_KEY = "orderflow.realtime"


@dataclass(frozen=True)
class OrderEvent:
    kind = "order.status"

    order_id: int
    restaurant_id: int
    order_number: str
    status: str
    previous_status: str | None
    assigned_staff_id: int | None = None
    session_id: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def channels(self) -> list[str]:
        channels = [f"restaurant:{self.restaurant_id}"]
        if self.assigned_staff_id is not None:
            channels.append(f"staff:{self.assigned_staff_id}")
        if self.session_id:
            channels.append(f"session:{self.session_id}")
        return channels

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "order_id": self.order_id,
            "restaurant_id": self.restaurant_id,
            "order_number": self.order_number,
            "status": self.status,
            "previous_status": self.previous_status,
            "assigned_staff_id": self.assigned_staff_id,
            "session_id": self.session_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@dataclass(frozen=True)
class NotificationEvent:
    kind = "notification.created"

    notification_id: int
    restaurant_id: int
    recipient_type: str
    recipient_id: str
    notification_type: str
    order_id: int | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def channels(self) -> list[str]:
        prefix = {
            "customer_session": "session",
            "staff": "staff",
            "owner": "owner",
        }.get(self.recipient_type, self.recipient_type)
        return [f"{prefix}:{self.recipient_id}"]


@dataclass(frozen=True)
class StaffAvailabilityEvent:
    kind = "staff.availability"

    staff_id: int
    restaurant_id: int
    is_online: bool
    current_count: int
    max_capacity: int
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def has_capacity(self) -> bool:
        return self.is_online and self.current_count < self.max_capacity

    def channels(self) -> list[str]:
        return [f"restaurant:{self.restaurant_id}", f"staff:{self.staff_id}"]


Handler = Callable[[Any], None]


class RealtimeBroker:
    """Flask extension holding per-app channel subscriptions."""

    def __init__(self, app=None) -> None:
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        app.extensions[EXTENSION_KEY] = defaultdict(list)

    def _handlers(self) -> DefaultDict[str, List[Handler]]:
        return current_app.extensions[EXTENSION_KEY]

    def subscribe(self, channel: str, handler: Handler) -> None:
        """Subscribe to a channel (`restaurant:1`) or an event kind (`order.status`)."""
        self._handlers()[channel].append(handler)

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers().get(channel, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event) -> int:
        """
        Deliver an event to kind subscribers, then channel subscribers.

        Handler failures are logged and isolated; the state change that
        produced the event is already committed. Returns deliveries made.
        """
        registry = self._handlers()
        targets: list[Handler] = list(registry.get(event.kind, []))
        for channel in event.channels():
            targets.extend(registry.get(channel, []))

        delivered = 0
        for handler in targets:
            try:
                handler(event)
                delivered += 1
            except Exception:
                current_app.logger.exception("Realtime handler failed for %s", event.kind)
        return delivered
