# therapy_booking/services/conflict_service.py
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..config import get_settings

logger = structlog.get_logger(__name__)


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and end_a > start_b


def check_conflict(
    db: Session,
    therapist_id: int,
    requested_start: datetime,
    duration_minutes: Optional[int] = None,
    exclude_session_id: Optional[int] = None,
) -> schemas.ConflictResult:
    """Whether a session starting at ``requested_start`` overlaps an active session of the therapist.

    Read-only. Callers that go on to insert must hold the therapist's
    BookingGuard across the check and the insert.
    """
    if duration_minutes is None:
        duration_minutes = get_settings().session_duration_minutes
    if duration_minutes <= 0:
        raise errors.ValidationError("Session duration must be a positive number of minutes")
    duration = timedelta(minutes=duration_minutes)
    requested_end = requested_start + duration

    query = db.query(models.TherapySession).filter(
        models.TherapySession.therapist_id == therapist_id,
        models.TherapySession.session_date >= requested_start - duration,
        models.TherapySession.session_date <= requested_start + duration,
        ~models.TherapySession.status.in_(list(models.RELEASED_STATUSES)),
    )
    if exclude_session_id is not None:
        query = query.filter(models.TherapySession.id != exclude_session_id)

    for existing in query.order_by(models.TherapySession.session_date).all():
        existing_end = existing.session_date + timedelta(minutes=existing.duration_minutes)
        if intervals_overlap(requested_start, requested_end, existing.session_date, existing_end):
            logger.info(
                "booking_conflict",
                therapist_id=therapist_id,
                requested_start=requested_start.isoformat(),
                conflicting_session_id=existing.id,
            )
            return schemas.ConflictResult(
                is_conflict=True,
                conflicting_session=schemas.SessionResponse.model_validate(existing),
            )
    return schemas.ConflictResult(is_conflict=False)


class BookingGuard:
    """Serializes check-then-insert booking per therapist.

    Inside the process a per-therapist lock orders competing threads; across
    processes the therapist's ``schedule_locks`` row is held FOR UPDATE until
    the caller's transaction ends.
    """

    def __init__(self):
        # One lock per therapist ever booked; bounded by the therapist roster
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, therapist_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(therapist_id)
            if lock is None:
                lock = self._locks[therapist_id] = threading.Lock()
            return lock

    def _lock_row(self, db: Session, therapist_id: int) -> models.ScheduleLock:
        row = db.query(models.ScheduleLock).filter(
            models.ScheduleLock.therapist_id == therapist_id
        ).with_for_update().first()
        if row is None:
            try:
                db.add(models.ScheduleLock(therapist_id=therapist_id, version=0))
                db.flush()
            except IntegrityError:
                # Another process created it first; nothing else is pending yet
                db.rollback()
            row = db.query(models.ScheduleLock).filter(
                models.ScheduleLock.therapist_id == therapist_id
            ).with_for_update().one()
        row.version += 1
        db.flush()
        return row

    @contextmanager
    def hold(self, db: Session, therapist_id: int):
        """Hold the therapist's schedule; enter before any other write, commit or roll back inside the block."""
        lock = self._lock_for(therapist_id)
        with lock:
            self._lock_row(db, therapist_id)
            yield


# Process-wide guard shared by every lifecycle instance
booking_guard = BookingGuard()
