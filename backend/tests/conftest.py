"""
Pytest fixtures for orderflow backend tests.

Provides an in-memory database per session, a table wipe per test, tenant
fixtures (restaurants, staff), caller identities and a realtime event
capture.
"""

import pytest
from orderflow import create_app
from orderflow.actors import Actor
from orderflow.extensions import db, realtime
from orderflow.models import Restaurant, StaffMember, StaffAvailability, Order
from orderflow.models.orders import ACTIVE_STATUSES, OrderStatus
from orderflow.services import staff_service
from orderflow.time_utils import utcnow


OWNER_ID = "owner-1"
OTHER_OWNER_ID = "owner-2"

# 2 x 250.00 = 500.00
ITEMS = [{"item_name": "Paneer Tikka", "menu_item_id": 11, "quantity": 2, "unit_price_cents": 25000}]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def events(db_session):
    """Capture every realtime event published during the test."""
    captured = []
    kinds = ("order.status", "notification.created", "staff.availability")
    for kind in kinds:
        realtime.subscribe(kind, captured.append)

    yield captured

    for kind in kinds:
        realtime.unsubscribe(kind, captured.append)


def _make_restaurant(db_session, *, name, owner_id, auto_assign=True, tax_rate_bps=0):
    restaurant = Restaurant(
        name=name,
        owner_id=owner_id,
        order_prefix="ORD",
        tax_rate_bps=tax_rate_bps,
        auto_assign=auto_assign,
        is_active=True,
        created_at=utcnow(),
    )
    db_session.add(restaurant)
    db_session.commit()
    return restaurant


@pytest.fixture(scope='function')
def restaurant(db_session):
    """Restaurant in automatic assignment mode."""
    return _make_restaurant(db_session, name="Spice Route", owner_id=OWNER_ID)


@pytest.fixture(scope='function')
def manual_restaurant(db_session):
    """Restaurant where staff pick orders themselves."""
    return _make_restaurant(db_session, name="Manual Cafe", owner_id=OWNER_ID, auto_assign=False)


@pytest.fixture(scope='function')
def other_restaurant(db_session):
    return _make_restaurant(db_session, name="Other Place", owner_id=OTHER_OWNER_ID)


@pytest.fixture(scope='function')
def make_staff(db_session):
    """Factory: make_staff(restaurant, name, rating=5.0, online=False, capacity=None)."""
    def _make(restaurant, name, rating=5.0, online=False, capacity=None):
        staff = StaffMember(
            restaurant_id=restaurant.id,
            display_name=name,
            performance_rating=rating,
            is_active=True,
            created_at=utcnow(),
        )
        db_session.add(staff)
        db_session.commit()
        if capacity is not None:
            staff_service.set_max_capacity(staff.id, capacity)
        if online:
            staff_service.set_online(staff.id, True)
        return staff

    return _make


@pytest.fixture(scope='function')
def owner():
    return Actor("owner", OWNER_ID)


@pytest.fixture(scope='function')
def customer():
    return Actor("customer_session", "sess-1")


def staff_actor(staff) -> Actor:
    return Actor("staff", str(staff.id))


def load(staff) -> int:
    """Today's current_count for a staff member (0 when no record)."""
    record = staff_service.find_availability(staff.id)
    if record is None:
        return 0
    db.session.refresh(record)
    return record.current_count


def open_orders(staff) -> int:
    """Orders the staff member holds that are not yet served/delivered."""
    return (
        db.session.query(Order)
        .filter(
            Order.assigned_staff_id == staff.id,
            Order.status.in_([s for s in ACTIVE_STATUSES if s != OrderStatus.PENDING]),
        )
        .count()
    )


def availability(staff) -> StaffAvailability:
    record = staff_service.find_availability(staff.id)
    db.session.refresh(record)
    return record


def auth_headers(actor: Actor) -> dict:
    """Helper to create gateway identity headers."""
    return {"X-Actor-Type": actor.kind, "X-Actor-Id": actor.id}
