"""
Staff Availability Tracker tests.

current_count only moves through the conditional reserve/release writes.
"""

import pytest

from orderflow.errors import (
    CapacityExceededError,
    StaffUnavailableError,
    ValidationError,
    WorkloadInvariantError,
)
from orderflow.realtime import StaffAvailabilityEvent
from orderflow.services import staff_service

from conftest import availability


class TestOnlineFlag:

    def test_first_online_creates_todays_record(self, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha")
        assert staff_service.find_availability(staff.id) is None

        record = staff_service.set_online(staff.id, True)

        assert record.is_online is True
        assert record.current_count == 0
        assert record.max_capacity == 5
        assert record.went_online_at is not None

    def test_toggle_is_announced(self, restaurant, make_staff, events):
        staff = make_staff(restaurant, "Asha")
        staff_service.set_online(staff.id, True)
        staff_service.set_online(staff.id, False)

        announced = [e for e in events if isinstance(e, StaffAvailabilityEvent)]
        assert [e.is_online for e in announced] == [True, False]
        assert announced[-1].has_capacity is False

    def test_inactive_staff_cannot_go_online(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha")
        staff.is_active = False
        db_session.commit()
        with pytest.raises(StaffUnavailableError):
            staff_service.set_online(staff.id, True)

    def test_capacity_carried_to_new_day(self, db_session, restaurant, make_staff):
        from datetime import timedelta
        from orderflow.time_utils import business_date

        staff = make_staff(restaurant, "Asha", capacity=2)
        yesterday = staff_service.find_availability(staff.id)
        yesterday.business_date = business_date() - timedelta(days=1)
        db_session.commit()

        today = staff_service.set_online(staff.id, True)
        assert today.max_capacity == 2


# =============================================================================
# RESERVE / RELEASE
# =============================================================================

class TestReserveRelease:

    def test_reserve_and_release(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha", online=True)

        record = staff_service.reserve(staff.id)
        db_session.commit()
        assert record.current_count == 1

        record = staff_service.release(record.id)
        db_session.commit()
        assert record.current_count == 0

    def test_reserve_at_capacity_rejected(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha", online=True, capacity=1)
        staff_service.reserve(staff.id)
        db_session.commit()

        with pytest.raises(CapacityExceededError):
            staff_service.reserve(staff.id)
        db_session.rollback()

        assert availability(staff).current_count == 1

    def test_reserve_offline_rejected(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha", online=True)
        staff_service.set_online(staff.id, False)

        with pytest.raises(StaffUnavailableError):
            staff_service.reserve(staff.id)
        db_session.rollback()
        assert availability(staff).current_count == 0

    def test_reserve_without_record_rejected(self, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha")
        with pytest.raises(StaffUnavailableError):
            staff_service.reserve(staff.id)

    def test_release_below_zero_is_an_invariant_error(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha", online=True)
        record = availability(staff)

        with pytest.raises(WorkloadInvariantError):
            staff_service.release(record.id)
        db_session.rollback()
        assert availability(staff).current_count == 0

    def test_going_offline_keeps_open_orders(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha", online=True)
        staff_service.reserve(staff.id)
        db_session.commit()

        record = staff_service.set_online(staff.id, False)
        assert record.current_count == 1
        assert record.has_capacity is False


class TestMaxCapacity:

    @pytest.mark.parametrize("value", [0, -3, "5", 2.0, True])
    def test_invalid_values(self, restaurant, make_staff, value):
        staff = make_staff(restaurant, "Asha")
        with pytest.raises(ValidationError):
            staff_service.set_max_capacity(staff.id, value)

    def test_cannot_drop_below_open_orders(self, db_session, restaurant, make_staff):
        staff = make_staff(restaurant, "Asha", online=True)
        staff_service.reserve(staff.id)
        staff_service.reserve(staff.id)
        db_session.commit()

        with pytest.raises(ValidationError):
            staff_service.set_max_capacity(staff.id, 1)
        assert availability(staff).max_capacity == 5

        record = staff_service.set_max_capacity(staff.id, 2)
        assert record.max_capacity == 2
        assert record.has_capacity is False


# =============================================================================
# ELIGIBILITY AND RANKING
# =============================================================================

class TestEligibleStaff:

    def test_rating_then_load_then_age(self, db_session, restaurant, make_staff):
        ben = make_staff(restaurant, "Ben", rating=4.5, online=True)
        asha = make_staff(restaurant, "Asha", rating=4.8, online=True)
        chen = make_staff(restaurant, "Chen", rating=4.5, online=True)

        ranked = [a.staff_id for a in staff_service.eligible_staff(restaurant.id)]
        assert ranked == [asha.id, ben.id, chen.id]

        staff_service.reserve(ben.id)
        db_session.commit()
        ranked = [a.staff_id for a in staff_service.eligible_staff(restaurant.id)]
        assert ranked == [asha.id, chen.id, ben.id]

    def test_excludes_offline_full_inactive_and_other_tenants(
        self, db_session, restaurant, other_restaurant, make_staff
    ):
        online = make_staff(restaurant, "Online", online=True)
        make_staff(restaurant, "Offline")
        full = make_staff(restaurant, "Full", online=True, capacity=1)
        staff_service.reserve(full.id)
        gone = make_staff(restaurant, "Gone", online=True)
        gone.is_active = False
        make_staff(other_restaurant, "Elsewhere", online=True)
        db_session.commit()

        ranked = [a.staff_id for a in staff_service.eligible_staff(restaurant.id)]
        assert ranked == [online.id]

        assert staff_service.eligible_staff(restaurant.id, exclude_staff_ids={online.id}) == []

    def test_workload_report(self, db_session, restaurant, make_staff):
        asha = make_staff(restaurant, "Asha", online=True, capacity=4)
        make_staff(restaurant, "Ben")
        staff_service.reserve(asha.id)
        db_session.commit()

        rows = {r["display_name"]: r for r in staff_service.staff_workload(restaurant.id)}
        assert rows["Asha"]["current_count"] == 1
        assert rows["Asha"]["load_percent"] == 25
        assert rows["Asha"]["has_capacity"] is True
        assert rows["Ben"]["is_online"] is False
        assert rows["Ben"]["max_capacity"] == 5
