"""
Notification Fan-out tests.

Delivery is idempotent per (order, event, recipient, round), expires after the
retention window and never rolls back the transition it describes.
"""

from datetime import timedelta

import pytest

from orderflow.errors import NotFoundError
from orderflow.extensions import db
from orderflow.models import Notification, OrderStatus
from orderflow.realtime import NotificationEvent
from orderflow.services import assignment_service, notification_service, order_service
from orderflow.time_utils import utcnow

from conftest import ITEMS, staff_actor


def _deliver(order, recipient_id="sess-1", **overrides):
    kwargs = dict(
        restaurant_id=order.restaurant_id,
        order_id=order.id,
        event="preparing",
        recipient_type="customer_session",
        recipient_id=recipient_id,
        notification_type="status_changed",
        title="Order update",
        message="Your order is being prepared",
    )
    kwargs.update(overrides)
    return notification_service.deliver(**kwargs)


class TestDedupe:

    def test_key_format(self):
        assert notification_service.dedupe_key(7, "assigned", "staff", 3) == "7:assigned:staff:3"
        assert notification_service.dedupe_key(7, "assigned", "staff", 3, 2) == "7:assigned:staff:3:r2"

    def test_redelivery_is_a_noop(self, restaurant, events):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")

        first = _deliver(order)
        second = _deliver(order)

        assert first is not None
        assert second is None
        assert db.session.query(Notification).count() == 1
        assert len([e for e in events if isinstance(e, NotificationEvent)]) == 1

    def test_new_round_is_delivered(self, restaurant):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")
        _deliver(order)
        assert _deliver(order, assignment_round=1) is not None

    def test_redelivered_status_change(self, manual_restaurant, make_staff, customer):
        asha = make_staff(manual_restaurant, "Asha", online=True)
        order = assignment_service.place_order(manual_restaurant.id, ITEMS, customer)
        assignment_service.claim_order(order.id, asha.id)
        order = assignment_service.advance_order(order.id, "preparing", staff_actor(asha))
        before = db.session.query(Notification).count()

        assert notification_service.notify_status_changed(order, OrderStatus.ASSIGNED) == []
        assert db.session.query(Notification).count() == before

    def test_unknown_recipient_type(self, restaurant):
        order = order_service.create_order(restaurant.id, ITEMS)
        with pytest.raises(ValueError):
            _deliver(order, recipient_type="kitchen")


class TestChannels:

    def test_events_target_recipient_channel(self, restaurant, events):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")
        _deliver(order)
        _deliver(order, recipient_type="staff", recipient_id=5, event="assigned")
        _deliver(order, recipient_type="owner", recipient_id="owner-1")

        channels = [e.channels() for e in events if isinstance(e, NotificationEvent)]
        assert channels == [["session:sess-1"], ["staff:5"], ["owner:owner-1"]]


class TestFailureIsolation:

    def test_delivery_failure_keeps_transition(self, restaurant, make_staff, customer, monkeypatch):
        asha = make_staff(restaurant, "Asha", online=True)
        order = assignment_service.place_order(restaurant.id, ITEMS, customer)

        def _broken(**kwargs):
            raise RuntimeError("notification store down")

        monkeypatch.setattr(notification_service, "deliver", _broken)
        updated = assignment_service.advance_order(order.id, "preparing", staff_actor(asha))

        assert updated.status == OrderStatus.PREPARING
        assert db.session.query(Notification).filter_by(notification_type="order_accepted").count() == 0

    def test_one_failed_recipient_does_not_skip_the_others(self, manual_restaurant, make_staff, customer, monkeypatch):
        asha = make_staff(manual_restaurant, "Asha", online=True)
        order = assignment_service.place_order(manual_restaurant.id, ITEMS, customer)
        real_deliver = notification_service.deliver

        def _staff_down(**kwargs):
            if kwargs["recipient_type"] == "staff":
                raise RuntimeError("push gateway down")
            return real_deliver(**kwargs)

        monkeypatch.setattr(notification_service, "deliver", _staff_down)
        claimed = assignment_service.claim_order(order.id, asha.id)

        assert claimed.status == OrderStatus.ASSIGNED
        delivered = {
            (n.recipient_type, n.notification_type)
            for n in db.session.query(Notification).filter(
                Notification.order_id == order.id,
                Notification.dedupe_key.like(f"{order.id}:assigned:%"),
            )
        }
        assert delivered == {("owner", "order_assigned"), ("customer_session", "status_changed")}


# =============================================================================
# RECIPIENT READS
# =============================================================================

class TestRecipientReads:

    def test_list_hides_expired(self, db_session, restaurant):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")
        fresh = _deliver(order)
        stale = _deliver(order, event="ready")
        stale.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        listed = notification_service.list_for_recipient("customer_session", "sess-1")
        assert [n.id for n in listed] == [fresh.id]

    def test_mark_read_only_for_recipient(self, restaurant):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")
        notification = _deliver(order)

        with pytest.raises(NotFoundError):
            notification_service.mark_read(notification.id, "customer_session", "sess-2")

        read = notification_service.mark_read(notification.id, "customer_session", "sess-1")
        assert read.is_read is True
        assert read.read_at is not None
        assert notification_service.list_for_recipient("customer_session", "sess-1", unread_only=True) == []

    def test_mark_all_read(self, restaurant):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")
        _deliver(order)
        _deliver(order, event="ready")
        _deliver(order, recipient_id="sess-2")

        assert notification_service.mark_all_read("customer_session", "sess-1") == 2
        assert len(notification_service.list_for_recipient("customer_session", "sess-2", unread_only=True)) == 1

    def test_purge_expired(self, restaurant):
        order = order_service.create_order(restaurant.id, ITEMS, session_id="sess-1")
        _deliver(order)

        assert notification_service.purge_expired() == 0
        assert notification_service.purge_expired(now=utcnow() + timedelta(hours=25)) == 1
        assert db.session.query(Notification).count() == 0
