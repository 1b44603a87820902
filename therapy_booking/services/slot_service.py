# therapy_booking/services/slot_service.py
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..config import get_settings
from .conflict_service import check_conflict, intervals_overlap

logger = structlog.get_logger(__name__)

MAX_REPORT_DAYS = 92
MAX_SUGGESTIONS = 5


def window_zone(window: models.AvailabilityWindow) -> ZoneInfo:
    return ZoneInfo(window.timezone or get_settings().default_timezone)


def is_date_blocked(db: Session, therapist_id: int, target_date: date) -> bool:
    return db.query(models.BlockedDate.id).filter(
        models.BlockedDate.therapist_id == therapist_id,
        models.BlockedDate.blocked_date == target_date,
    ).first() is not None


def candidate_windows(db: Session, therapist_id: int, target_date: date) -> List[models.AvailabilityWindow]:
    """Active windows of any type that apply to ``target_date``."""
    windows = db.query(models.AvailabilityWindow).filter(
        models.AvailabilityWindow.therapist_id == therapist_id,
        models.AvailabilityWindow.is_active.is_(True),
        (models.AvailabilityWindow.day_of_week == models.js_weekday(target_date))
        | (models.AvailabilityWindow.specific_date == target_date),
    ).order_by(models.AvailabilityWindow.start_time, models.AvailabilityWindow.id).all()
    return [window for window in windows if window.matches_date(target_date)]


def generate_window_slots(window: models.AvailabilityWindow, target_date: date, duration: int) -> List[schemas.Slot]:
    """Contiguous ``duration``-minute slots from the window start, none running past its end."""
    tz = window_zone(window)
    current_dt = datetime.combine(target_date, time.fromisoformat(window.start_time), tzinfo=tz)
    end_dt = datetime.combine(target_date, time.fromisoformat(window.end_time), tzinfo=tz)

    slots = []
    while current_dt < end_dt:
        slot_end_dt = current_dt + timedelta(minutes=duration)
        if slot_end_dt > end_dt:
            break
        slots.append(schemas.Slot(
            start_time=current_dt.strftime("%H:%M"),
            end_time=slot_end_dt.strftime("%H:%M"),
            starts_at=current_dt.astimezone(timezone.utc),
            ends_at=slot_end_dt.astimezone(timezone.utc),
            window_id=window.id,
        ))
        current_dt = slot_end_dt
    return slots


def active_sessions_between(db: Session, therapist_id: int, range_start: datetime, range_end: datetime) -> List[models.TherapySession]:
    """Sessions holding their slot whose interval may touch [range_start, range_end)."""
    lookback = timedelta(minutes=get_settings().session_duration_minutes)
    sessions = db.query(models.TherapySession).filter(
        models.TherapySession.therapist_id == therapist_id,
        models.TherapySession.session_date > range_start - lookback,
        models.TherapySession.session_date < range_end,
        ~models.TherapySession.status.in_(list(models.RELEASED_STATUSES)),
    ).all()
    return [
        s for s in sessions
        if intervals_overlap(s.session_date, s.session_date + timedelta(minutes=s.duration_minutes), range_start, range_end)
    ]


def _all_slots(db: Session, therapist_id: int, target_date: date, duration: int) -> Tuple[List[models.AvailabilityWindow], List[schemas.Slot]]:
    windows = candidate_windows(db, therapist_id, target_date)
    slots = {}
    for window in windows:
        for slot in generate_window_slots(window, target_date, duration):
            # Overlapping windows yield the same interval once
            slots.setdefault((slot.starts_at, slot.ends_at), slot)
    ordered = sorted(slots.values(), key=lambda s: (s.starts_at, s.ends_at, s.window_id))
    return windows, ordered


def _remove_booked(db: Session, therapist_id: int, slots: List[schemas.Slot]) -> List[schemas.Slot]:
    if not slots:
        return []
    range_start = min(s.starts_at for s in slots)
    range_end = max(s.ends_at for s in slots)
    sessions = active_sessions_between(db, therapist_id, range_start, range_end)
    open_slots = []
    for slot in slots:
        taken = any(
            intervals_overlap(slot.starts_at, slot.ends_at, s.session_date, s.session_date + timedelta(minutes=s.duration_minutes))
            for s in sessions
        )
        if not taken:
            open_slots.append(slot)
    return open_slots


def compute_slots(db: Session, therapist_id: int, target_date: date, slot_duration_minutes: Optional[int] = None) -> List[schemas.Slot]:
    """Open bookable slots for a therapist on a calendar date.

    Slots are cut from every active window that applies to the date (recurring
    by weekday and recurrence pattern, one-time and exception by exact date),
    minus intervals held by sessions that are not Declined or Cancelled. A
    blocked date has no slots. Output is ordered by start time and is
    identical for identical inputs and state.
    """
    duration = get_settings().default_slot_minutes if slot_duration_minutes is None else slot_duration_minutes
    if duration <= 0:
        raise errors.ValidationError("Slot duration must be a positive number of minutes")

    if is_date_blocked(db, therapist_id, target_date):
        logger.debug("slots_blocked_date", therapist_id=therapist_id, date=target_date.isoformat())
        return []

    _, slots = _all_slots(db, therapist_id, target_date, duration)
    open_slots = _remove_booked(db, therapist_id, slots)
    logger.debug("slots_computed", therapist_id=therapist_id, date=target_date.isoformat(), total=len(slots), open=len(open_slots))
    return open_slots


def check_slot_availability(db: Session, therapist_id: int, requested_start: datetime, now: datetime) -> schemas.SlotAvailability:
    """Whether a session can be booked at ``requested_start`` right now.

    The session interval must sit inside an applicable window, avoid blocked
    dates and active sessions, and respect the window's advance-booking bounds.
    """
    if requested_start.tzinfo is None:
        raise errors.ValidationError("requested_start must be timezone-aware")

    settings = get_settings()
    duration = settings.session_duration_minutes
    local_default = requested_start.astimezone(ZoneInfo(settings.default_timezone))

    def suggestions() -> List[schemas.Slot]:
        upcoming = [s for s in compute_slots(db, therapist_id, local_default.date(), duration) if s.starts_at > now]
        return upcoming[:MAX_SUGGESTIONS]

    containing = None
    for window in candidate_windows(db, therapist_id, local_default.date()):
        local = requested_start.astimezone(window_zone(window))
        if local.date() != local_default.date():
            continue
        start_minutes = local.hour * 60 + local.minute
        if window.start_minutes <= start_minutes and start_minutes + duration <= window.end_minutes:
            containing = window
            break

    if containing is None:
        return schemas.SlotAvailability(
            available=False,
            reason="Requested time is outside the therapist's availability",
            suggestions=suggestions(),
        )

    earliest = now + timedelta(hours=containing.min_advance_booking_hours or 0)
    latest = now + timedelta(days=containing.max_advance_booking_days or 0)
    bounds = {"earliest_booking": earliest, "latest_booking": latest, "window_id": containing.id}

    if is_date_blocked(db, therapist_id, local_default.date()):
        return schemas.SlotAvailability(available=False, reason="Therapist is not available on this date", **bounds)
    if requested_start < earliest:
        return schemas.SlotAvailability(
            available=False,
            reason=f"Bookings must be made at least {containing.min_advance_booking_hours} hours in advance",
            **bounds,
        )
    if containing.max_advance_booking_days and requested_start > latest:
        return schemas.SlotAvailability(
            available=False,
            reason=f"Bookings can only be made up to {containing.max_advance_booking_days} days in advance",
            **bounds,
        )
    if check_conflict(db, therapist_id, requested_start, duration).is_conflict:
        return schemas.SlotAvailability(
            available=False,
            reason="Requested time is already booked",
            suggestions=suggestions(),
            **bounds,
        )
    return schemas.SlotAvailability(available=True, **bounds)


def availability_report(db: Session, therapist_id: int, start_date: date, end_date: date) -> schemas.AvailabilityReport:
    """Per-day slot supply and bookings over an inclusive date range."""
    if end_date < start_date:
        raise errors.ValidationError("end_date must not be before start_date")
    if (end_date - start_date).days + 1 > MAX_REPORT_DAYS:
        raise errors.ValidationError(f"Reports cover at most {MAX_REPORT_DAYS} days")

    duration = get_settings().session_duration_minutes
    tz = ZoneInfo(get_settings().default_timezone)
    report = schemas.AvailabilityReport(therapist_id=therapist_id, start_date=start_date, end_date=end_date)

    current = start_date
    while current <= end_date:
        blocked = is_date_blocked(db, therapist_id, current)
        windows, slots = _all_slots(db, therapist_id, current, duration)
        if blocked:
            windows, slots, open_slots = [], [], []
        else:
            open_slots = _remove_booked(db, therapist_id, slots)

        day_start = datetime.combine(current, time.min, tzinfo=tz).astimezone(timezone.utc)
        booked = db.query(models.TherapySession).filter(
            models.TherapySession.therapist_id == therapist_id,
            models.TherapySession.session_date >= day_start,
            models.TherapySession.session_date < day_start + timedelta(days=1),
            ~models.TherapySession.status.in_(list(models.RELEASED_STATUSES)),
        ).count()

        report.days.append(schemas.DailyAvailability(
            date=current,
            windows=len(windows),
            total_slots=len(slots),
            open_slots=len(open_slots),
            booked_sessions=booked,
        ))
        report.total_slots += len(slots)
        report.open_slots += len(open_slots)
        report.booked_sessions += booked
        current += timedelta(days=1)

    if report.total_slots:
        report.utilization_rate = round((report.total_slots - report.open_slots) / report.total_slots * 100, 1)
    return report
