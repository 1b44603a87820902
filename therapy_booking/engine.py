# therapy_booking/engine.py
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import models, schemas
from .audit_chain import AuditChain
from .database import SessionLocal
from .notifications import NotificationDispatcher
from .services import conflict_service, slot_service
from .services.availability_service import AvailabilityService
from .services.conflict_service import BookingGuard
from .services.session_lifecycle import SessionLifecycle

logger = logging.getLogger(__name__)


class BookingEngine:
    """Operation surface of the booking core.

    Every call runs in its own database session and returns plain schemas,
    so callers never hold ORM objects across units of work.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        audit: Optional[AuditChain] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = models.utcnow,
        guard: Optional[BookingGuard] = None,
    ):
        self.session_factory = session_factory
        self.audit = audit or AuditChain(session_factory)
        self.clock = clock
        self.availability = AvailabilityService(self.audit, clock)
        self.lifecycle = SessionLifecycle(self.audit, notifier, clock, guard)

    @contextmanager
    def unit_of_work(self):
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error in booking engine: {e}")
            raise
        finally:
            db.close()

    # ==================== AVAILABILITY ====================

    def list_availability(self, therapist_id: int, filters: Any = None) -> schemas.GroupedWindows:
        with self.unit_of_work() as db:
            return self.availability.list_windows(db, therapist_id, filters)

    def create_availability(self, window: Any, actor: Any = None) -> schemas.AvailabilityWindowResponse:
        with self.unit_of_work() as db:
            created = self.availability.create_window(db, window, _actor(actor))
            return schemas.AvailabilityWindowResponse.model_validate(created)

    def bulk_create_availability(self, therapist_id: int, windows: List[Any], actor: Any = None) -> schemas.BulkCreateResult:
        with self.unit_of_work() as db:
            result = self.availability.bulk_create_windows(db, therapist_id, windows, _actor(actor))
            return schemas.BulkCreateResult(
                created=[schemas.AvailabilityWindowResponse.model_validate(w) for w in result["created"]],
                errors=result["errors"],
            )

    def update_availability(self, window_id: int, patch: Any, actor: Any = None) -> schemas.AvailabilityWindowResponse:
        with self.unit_of_work() as db:
            updated = self.availability.update_window(db, window_id, patch, _actor(actor))
            return schemas.AvailabilityWindowResponse.model_validate(updated)

    def deactivate_availability(self, window_id: int, reason: Optional[str] = None, actor: Any = None) -> schemas.AvailabilityWindowResponse:
        with self.unit_of_work() as db:
            window = self.availability.deactivate_window(db, window_id, reason, _actor(actor))
            return schemas.AvailabilityWindowResponse.model_validate(window)

    def reactivate_availability(self, window_id: int, actor: Any = None) -> schemas.AvailabilityWindowResponse:
        with self.unit_of_work() as db:
            window = self.availability.reactivate_window(db, window_id, _actor(actor))
            return schemas.AvailabilityWindowResponse.model_validate(window)

    def block_date(self, therapist_id: int, blocked_date: date, reason: Optional[str] = None, actor: Any = None) -> schemas.BlockedDateResponse:
        with self.unit_of_work() as db:
            blocked = self.availability.block_date(db, therapist_id, blocked_date, reason, _actor(actor))
            return schemas.BlockedDateResponse.model_validate(blocked)

    def unblock_date(self, therapist_id: int, blocked_date: date, actor: Any = None) -> bool:
        with self.unit_of_work() as db:
            return self.availability.unblock_date(db, therapist_id, blocked_date, _actor(actor))

    # ==================== SLOTS & CONFLICTS ====================

    def compute_slots(self, therapist_id: int, target_date: date, duration_minutes: Optional[int] = None) -> List[schemas.Slot]:
        with self.unit_of_work() as db:
            return slot_service.compute_slots(db, therapist_id, target_date, duration_minutes)

    def check_slot_availability(self, therapist_id: int, requested_start: datetime) -> schemas.SlotAvailability:
        with self.unit_of_work() as db:
            return slot_service.check_slot_availability(db, therapist_id, requested_start, self.clock())

    def availability_report(self, therapist_id: int, start_date: date, end_date: date) -> schemas.AvailabilityReport:
        with self.unit_of_work() as db:
            return slot_service.availability_report(db, therapist_id, start_date, end_date)

    def check_conflict(self, therapist_id: int, requested_start: datetime) -> schemas.ConflictResult:
        with self.unit_of_work() as db:
            return conflict_service.check_conflict(db, therapist_id, requested_start)

    # ==================== SESSIONS ====================

    def request_booking(self, client_id: int, therapist_id: int, session_type: Any, session_date: datetime, actor: Any = None) -> schemas.SessionResponse:
        booking = {
            "client_id": client_id,
            "therapist_id": therapist_id,
            "session_type": session_type,
            "session_date": session_date,
        }
        with self.unit_of_work() as db:
            session = self.lifecycle.request_booking(db, booking, actor)
            return schemas.SessionResponse.model_validate(session)

    def approve(self, session_id: int, actor: Any, rate: Any = None,
                mpesa_number: Optional[str] = None, mpesa_name: Optional[str] = None) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            session = self.lifecycle.approve(db, session_id, actor, rate, mpesa_number, mpesa_name)
            return schemas.SessionResponse.model_validate(session)

    def decline(self, session_id: int, actor: Any, reason: Optional[str] = None) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.decline(db, session_id, actor, reason))

    def submit_payment(self, session_id: int, actor: Any, proof: Any) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.submit_payment(db, session_id, actor, proof))

    def verify_payment(self, session_id: int, actor: Any) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.verify_payment(db, session_id, actor))

    def start_call(self, session_id: int, actor: Any) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.start_call(db, session_id, actor))

    def end_call(self, session_id: int, actor: Any) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.end_call(db, session_id, actor))

    def cancel(self, session_id: int, actor: Any) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.cancel(db, session_id, actor))

    def get_session(self, session_id: int) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.get_session(db, session_id))

    def find_by_booking_reference(self, reference: str) -> schemas.SessionResponse:
        with self.unit_of_work() as db:
            return schemas.SessionResponse.model_validate(self.lifecycle.find_by_booking_reference(db, reference))

    def list_sessions(self, therapist_id: Optional[int] = None, client_id: Optional[int] = None,
                      statuses: Optional[Iterable[Any]] = None) -> List[schemas.SessionResponse]:
        with self.unit_of_work() as db:
            sessions = self.lifecycle.list_sessions(db, therapist_id, client_id, statuses)
            return [schemas.SessionResponse.model_validate(s) for s in sessions]

    # ==================== AUDIT ====================

    def list_audit_entries(self, target_type=None, target_id: Optional[int] = None, action_type=None) -> List[schemas.AuditLogEntry]:
        return self.audit.list_entries(target_type, target_id, action_type)

    def verify_audit_chain(self, entries: Optional[Iterable[Any]] = None) -> schemas.ChainVerification:
        """Verify the given entries, or the whole stored chain when none are given."""
        if entries is None:
            return self.audit.verify_stored()
        return self.audit.verify(list(entries))


def _actor(actor: Any) -> Optional[schemas.Actor]:
    if actor is None:
        return None
    return schemas.parse_input(schemas.Actor, actor)
