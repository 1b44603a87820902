# tests/test_slots.py
from datetime import date, datetime, timezone

import pytest

from therapy_booking import errors, models
from therapy_booking.services import slot_service

from conftest import MONDAY, NEXT_MONDAY, THERAPIST_ID, add_session, dated, local, recurring


def pairs(slots):
    return [(s.start_time, s.end_time) for s in slots]


def test_monday_window_yields_hourly_slots(availability, db):
    availability.create_window(db, recurring(day_of_week=1, start="09:00", end="12:00"))

    slots = slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)

    assert pairs(slots) == [("09:00", "10:00"), ("10:00", "11:00"), ("11:00", "12:00")]
    # Nairobi is UTC+3
    assert slots[0].starts_at == datetime(2025, 1, 6, 6, 0, tzinfo=timezone.utc)


def test_confirmed_session_removes_its_slot(availability, db):
    availability.create_window(db, recurring(start="09:00", end="12:00"))
    add_session(db, local(MONDAY, "10:00"), status=models.SessionStatus.confirmed)

    slots = slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)

    assert pairs(slots) == [("09:00", "10:00"), ("11:00", "12:00")]


@pytest.mark.parametrize("status", [models.SessionStatus.declined, models.SessionStatus.cancelled])
def test_released_sessions_do_not_hold_slots(availability, db, status):
    availability.create_window(db, recurring(start="09:00", end="12:00"))
    add_session(db, local(MONDAY, "10:00"), status=status)

    assert len(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == 3


def test_misaligned_session_removes_both_touched_slots(availability, db):
    availability.create_window(db, recurring(start="09:00", end="12:00"))
    add_session(db, local(MONDAY, "10:30"), status=models.SessionStatus.pending_approval)

    assert pairs(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == [("09:00", "10:00")]


def test_other_therapists_sessions_ignored(availability, db):
    availability.create_window(db, recurring(start="09:00", end="12:00"))
    add_session(db, local(MONDAY, "10:00"), therapist_id=99)

    assert len(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == 3


def test_slots_never_run_past_window_end(availability, db):
    availability.create_window(db, recurring(start="09:00", end="11:30"))

    assert pairs(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == [("09:00", "10:00"), ("10:00", "11:00")]
    assert len(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 30)) == 5


def test_blocked_date_has_no_slots(availability, db):
    availability.create_window(db, recurring())
    availability.block_date(db, THERAPIST_ID, MONDAY)

    assert slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60) == []
    assert len(slot_service.compute_slots(db, THERAPIST_ID, NEXT_MONDAY, 60)) == 3


def test_wrong_weekday_and_inactive_windows_yield_nothing(availability, db):
    window = availability.create_window(db, recurring(day_of_week=2))
    assert slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60) == []

    monday = availability.create_window(db, recurring(day_of_week=1))
    availability.deactivate_window(db, monday.id)
    assert slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60) == []
    assert window.is_active


def test_dated_and_exception_windows_participate(availability, db):
    availability.create_window(db, recurring(start="09:00", end="10:00"))
    availability.create_window(db, dated(MONDAY, start="13:00", end="14:00"))
    availability.create_window(db, dated(MONDAY, start="16:00", end="17:00", window_type="exception"))
    availability.create_window(db, dated(NEXT_MONDAY, start="18:00", end="19:00"))

    slots = slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)

    assert pairs(slots) == [("09:00", "10:00"), ("13:00", "14:00"), ("16:00", "17:00")]


def test_overlapping_windows_of_different_types_do_not_duplicate_slots(availability, db):
    availability.create_window(db, recurring(start="09:00", end="11:00"))
    availability.create_window(db, dated(MONDAY, start="10:00", end="12:00"))

    assert pairs(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == [
        ("09:00", "10:00"), ("10:00", "11:00"), ("11:00", "12:00"),
    ]


def test_slots_fall_inside_active_windows(availability, db):
    availability.create_window(db, recurring(start="08:15", end="12:40"))
    availability.create_window(db, dated(MONDAY, start="14:00", end="15:50"))
    add_session(db, local(MONDAY, "09:30"))

    windows = {w.id: w for w in db.query(models.AvailabilityWindow).all()}
    for slot in slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 45):
        window = windows[slot.window_id]
        assert window.is_active
        assert window.start_time <= slot.start_time < slot.end_time <= window.end_time


def test_compute_slots_is_idempotent(availability, db):
    availability.create_window(db, recurring(start="09:00", end="17:00"))
    add_session(db, local(MONDAY, "12:00"))

    first = slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)
    second = slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)

    assert first == second
    assert [s.starts_at for s in first] == sorted(s.starts_at for s in first)


def test_biweekly_recurrence(availability, db):
    availability.create_window(db, recurring(recurrence_frequency="biweekly", recurrence_start_date=MONDAY))

    assert len(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == 3
    assert slot_service.compute_slots(db, THERAPIST_ID, NEXT_MONDAY, 60) == []
    assert len(slot_service.compute_slots(db, THERAPIST_ID, date(2025, 1, 20), 60)) == 3


def test_monthly_recurrence_by_week_of_month(availability, db):
    availability.create_window(db, recurring(recurrence_frequency="monthly", weeks_of_month=[1, 3]))

    assert len(slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60)) == 3
    assert slot_service.compute_slots(db, THERAPIST_ID, NEXT_MONDAY, 60) == []
    assert len(slot_service.compute_slots(db, THERAPIST_ID, date(2025, 1, 20), 60)) == 3


def test_recurrence_bounds(availability, db):
    availability.create_window(db, recurring(recurrence_start_date=NEXT_MONDAY, recurrence_end_date=date(2025, 1, 20)))

    assert slot_service.compute_slots(db, THERAPIST_ID, MONDAY, 60) == []
    assert len(slot_service.compute_slots(db, THERAPIST_ID, NEXT_MONDAY, 60)) == 3
    assert slot_service.compute_slots(db, THERAPIST_ID, date(2025, 1, 27), 60) == []


@pytest.mark.parametrize("duration", [0, -30])
def test_non_positive_duration_rejected(availability, db, duration):
    availability.create_window(db, recurring())

    with pytest.raises(errors.ValidationError):
        slot_service.compute_slots(db, THERAPIST_ID, MONDAY, duration)


def test_check_slot_availability(availability, db, clock):
    window = availability.create_window(db, recurring(start="09:00", end="12:00"))
    now = clock()

    ok = slot_service.check_slot_availability(db, THERAPIST_ID, local(MONDAY, "10:00"), now)
    assert ok.available is True
    assert ok.window_id == window.id

    # Would run past the window end
    late = slot_service.check_slot_availability(db, THERAPIST_ID, local(MONDAY, "11:30"), now)
    assert late.available is False
    assert pairs(late.suggestions) == [("09:00", "10:00"), ("10:00", "11:00"), ("11:00", "12:00")]

    add_session(db, local(MONDAY, "10:00"))
    taken = slot_service.check_slot_availability(db, THERAPIST_ID, local(MONDAY, "10:00"), now)
    assert taken.available is False
    assert "booked" in taken.reason
    assert pairs(taken.suggestions) == [("09:00", "10:00"), ("11:00", "12:00")]


def test_check_slot_availability_advance_bounds(availability, db, clock):
    availability.create_window(db, recurring(day_of_week=3, start="09:00", end="17:00"))
    now = clock()  # Wednesday 2025-01-01 09:00 Nairobi

    too_soon = slot_service.check_slot_availability(db, THERAPIST_ID, local(date(2025, 1, 1), "15:00"), now)
    assert too_soon.available is False
    assert "24 hours" in too_soon.reason

    too_far = slot_service.check_slot_availability(db, THERAPIST_ID, local(date(2025, 2, 5), "10:00"), now)
    assert too_far.available is False
    assert "30 days" in too_far.reason

    within = slot_service.check_slot_availability(db, THERAPIST_ID, local(date(2025, 1, 8), "10:00"), now)
    assert within.available is True


def test_availability_report(availability, db):
    availability.create_window(db, recurring(start="09:00", end="12:00"))
    add_session(db, local(MONDAY, "09:00"))
    add_session(db, local(MONDAY, "11:00"), status=models.SessionStatus.cancelled)
    availability.block_date(db, THERAPIST_ID, NEXT_MONDAY)

    report = slot_service.availability_report(db, THERAPIST_ID, MONDAY, NEXT_MONDAY)

    assert len(report.days) == 8
    monday = report.days[0]
    assert (monday.windows, monday.total_slots, monday.open_slots, monday.booked_sessions) == (1, 3, 2, 1)
    assert report.days[-1].total_slots == 0
    assert report.total_slots == 3
    assert report.open_slots == 2
    assert report.utilization_rate == 33.3

    with pytest.raises(errors.ValidationError):
        slot_service.availability_report(db, THERAPIST_ID, NEXT_MONDAY, MONDAY)
