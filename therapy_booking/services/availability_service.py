# therapy_booking/services/availability_service.py
import enum
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..audit_chain import AuditChain, audit_chain as default_audit_chain
from ..config import get_settings
from .slot_service import window_zone

logger = structlog.get_logger(__name__)

# Sessions a window change must not leave outside their window
COMMITTED_STATUSES = (
    models.SessionStatus.approved,
    models.SessionStatus.payment_submitted,
    models.SessionStatus.confirmed,
)

PATCHABLE_FIELDS = (
    "start_time", "end_time", "day_of_week", "specific_date", "title", "notes",
    "session_types", "max_sessions", "recurrence_frequency", "recurrence_start_date",
    "recurrence_end_date", "weeks_of_month", "timezone", "buffer_minutes",
    "min_advance_booking_hours", "max_advance_booking_days",
)


def snapshot(window: models.AvailabilityWindow) -> Dict[str, Any]:
    return schemas.AvailabilityWindowResponse.model_validate(window).model_dump(mode="json")


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _actor_fields(actor: Optional[schemas.Actor]) -> Dict[str, Any]:
    if actor is None:
        return {"actor_id": None, "actor_role": None}
    return {"actor_id": actor.id, "actor_role": actor.role}


class AvailabilityService:
    """Availability Store: declared windows and blocked dates per therapist.

    Every mutation is committed first and then recorded in the audit chain.
    """

    def __init__(self, audit: AuditChain = None, clock: Callable[[], datetime] = models.utcnow):
        self.audit = audit or default_audit_chain
        self.clock = clock

    # --- Queries ---

    def get_window(self, db: Session, window_id: int) -> models.AvailabilityWindow:
        window = db.query(models.AvailabilityWindow).filter(models.AvailabilityWindow.id == window_id).first()
        if window is None:
            raise errors.NotFoundError(f"Availability window {window_id} not found")
        return window

    def list_windows(self, db: Session, therapist_id: int, filters: Any = None) -> schemas.GroupedWindows:
        """Windows of a therapist grouped by type."""
        filters = schemas.parse_input(schemas.WindowListFilters, filters or {})
        query = db.query(models.AvailabilityWindow).filter(models.AvailabilityWindow.therapist_id == therapist_id)
        if filters.active_only:
            query = query.filter(models.AvailabilityWindow.is_active.is_(True))
        if filters.window_type is not None:
            query = query.filter(models.AvailabilityWindow.window_type == filters.window_type.value)

        windows = query.order_by(
            models.AvailabilityWindow.window_type,
            models.AvailabilityWindow.day_of_week,
            models.AvailabilityWindow.specific_date,
            models.AvailabilityWindow.start_time,
            models.AvailabilityWindow.id,
        ).all()

        if not filters.include_expired:
            today = self.clock().astimezone(ZoneInfo(get_settings().default_timezone)).date()
            windows = [w for w in windows if not w.is_expired(today)]

        grouped = schemas.GroupedWindows()
        for window in windows:
            response = schemas.AvailabilityWindowResponse.model_validate(window)
            grouped.windows.append(response)
            if window.window_type == models.WindowType.recurring.value:
                grouped.recurring.append(response)
            elif window.window_type == models.WindowType.one_time.value:
                grouped.one_time.append(response)
            else:
                grouped.exceptions.append(response)
        grouped.total = len(grouped.windows)
        return grouped

    # --- Invariant checks ---

    def _find_overlaps(self, db: Session, window: models.AvailabilityWindow) -> List[models.AvailabilityWindow]:
        query = db.query(models.AvailabilityWindow).filter(
            models.AvailabilityWindow.therapist_id == window.therapist_id,
            models.AvailabilityWindow.window_type == window.window_type,
            models.AvailabilityWindow.is_active.is_(True),
        )
        if window.day_of_week is not None:
            query = query.filter(models.AvailabilityWindow.day_of_week == window.day_of_week)
        else:
            query = query.filter(models.AvailabilityWindow.specific_date == window.specific_date)
        if window.id is not None:
            query = query.filter(models.AvailabilityWindow.id != window.id)
        return [other for other in query.all() if window.overlaps(other)]

    def _ensure_no_overlap(self, db: Session, window: models.AvailabilityWindow) -> None:
        overlapping = self._find_overlaps(db, window)
        if overlapping:
            other = overlapping[0]
            raise errors.ConflictError(
                f"Window {window.start_time}-{window.end_time} overlaps existing window "
                f"{other.start_time}-{other.end_time}",
                conflicts=[snapshot(w) for w in overlapping],
            )

    def _stranded_sessions(self, db: Session, window: models.AvailabilityWindow, original: Dict[str, Any]) -> List[models.TherapySession]:
        """Committed upcoming sessions inside the window as it was that no active window covers once patched."""
        old_window = models.WINDOW_CLASSES[models.WindowType(window.window_type)](**original)
        duration = get_settings().session_duration_minutes
        covering = [window] + db.query(models.AvailabilityWindow).filter(
            models.AvailabilityWindow.therapist_id == window.therapist_id,
            models.AvailabilityWindow.is_active.is_(True),
            models.AvailabilityWindow.id != window.id,
        ).all()

        upcoming = db.query(models.TherapySession).filter(
            models.TherapySession.therapist_id == window.therapist_id,
            models.TherapySession.session_date >= self.clock(),
            models.TherapySession.status.in_(list(COMMITTED_STATUSES)),
        ).order_by(models.TherapySession.session_date).all()

        def contains(w, session) -> bool:
            local = session.session_date.astimezone(window_zone(w))
            start = local.hour * 60 + local.minute
            return w.matches_date(local.date()) and w.start_minutes <= start and start + duration <= w.end_minutes

        return [
            s for s in upcoming
            if contains(old_window, s) and not any(contains(w, s) for w in covering)
        ]

    # --- Mutations ---

    def _build_window(self, data: schemas.AvailabilityWindowCreate, actor: Optional[schemas.Actor]) -> models.AvailabilityWindow:
        window_class = models.WINDOW_CLASSES[data.window_type]
        values = {key: _plain(value) for key, value in data.model_dump(exclude={"window_type"}).items()}
        values["timezone"] = values.get("timezone") or get_settings().default_timezone
        window = window_class(**values)
        window.duration_minutes = window.end_minutes - window.start_minutes
        window.is_active = True
        window.created_by = actor.id if actor else None
        return window

    def create_window(self, db: Session, window_data: Any, actor: Optional[schemas.Actor] = None) -> models.AvailabilityWindow:
        data = schemas.parse_input(schemas.AvailabilityWindowCreate, window_data)
        window = self._build_window(data, actor)
        self._ensure_no_overlap(db, window)

        try:
            db.add(window)
            db.commit()
            db.refresh(window)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("window_create_failed", therapist_id=data.therapist_id, error=str(e))
            raise

        logger.info("window_created", window_id=window.id, therapist_id=window.therapist_id, window_type=window.window_type)
        self.audit.append(
            models.AuditActionType.AVAILABILITY_CREATE,
            target_type=models.AuditTargetType.availability,
            target_id=window.id,
            new_value=snapshot(window),
            details=f"Created {window.window_type} availability {window.start_time}-{window.end_time}",
            **_actor_fields(actor),
        )
        return window

    def bulk_create_windows(self, db: Session, therapist_id: int, windows: List[Any], actor: Optional[schemas.Actor] = None) -> Dict[str, Any]:
        """Create each window independently; failures are reported per index."""
        created: List[models.AvailabilityWindow] = []
        failures: List[schemas.BulkCreateError] = []

        for index, raw in enumerate(windows):
            try:
                payload = raw.model_dump() if hasattr(raw, "model_dump") else dict(raw)
                payload["therapist_id"] = therapist_id
                data = schemas.parse_input(schemas.AvailabilityWindowCreate, payload)
                window = self._build_window(data, actor)
                self._ensure_no_overlap(db, window)
                db.add(window)
                db.flush()
                created.append(window)
            except errors.BookingError as e:
                failures.append(schemas.BulkCreateError(index=index, error=e.message))
            except (TypeError, ValueError) as e:
                failures.append(schemas.BulkCreateError(index=index, error=str(e)))

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("window_bulk_create_failed", therapist_id=therapist_id, error=str(e))
            raise

        logger.info("windows_bulk_created", therapist_id=therapist_id, created=len(created), failed=len(failures))
        if created:
            self.audit.append(
                models.AuditActionType.AVAILABILITY_BULK_CREATE,
                target_type=models.AuditTargetType.availability,
                new_value={"windows": [snapshot(w) for w in created]},
                details=f"Bulk created {len(created)} availability windows for therapist {therapist_id}",
                **_actor_fields(actor),
            )
        return {"created": created, "errors": failures}

    def update_window(self, db: Session, window_id: int, patch: Any, actor: Optional[schemas.Actor] = None) -> models.AvailabilityWindow:
        changes = schemas.parse_input(schemas.AvailabilityWindowUpdate, patch).model_dump(exclude_unset=True)
        window = self.get_window(db, window_id)
        before = snapshot(window)
        original = {field: getattr(window, field) for field in PATCHABLE_FIELDS}

        # Re-validate the merged window as a whole
        merged = dict(original)
        merged.update(changes)
        merged.update(therapist_id=window.therapist_id, window_type=window.window_type)
        data = schemas.parse_input(schemas.AvailabilityWindowCreate, merged)

        for field in PATCHABLE_FIELDS:
            if field in changes:
                setattr(window, field, _plain(getattr(data, field)))
        window.timezone = window.timezone or get_settings().default_timezone
        window.duration_minutes = window.end_minutes - window.start_minutes
        window.updated_by = actor.id if actor else window.updated_by

        try:
            if window.is_active:
                self._ensure_no_overlap(db, window)
            stranded = self._stranded_sessions(db, window, original)
            if stranded:
                raise errors.ConflictError(
                    f"Update would leave {len(stranded)} booked session(s) outside the window",
                    conflicts=[
                        {"session_id": s.id, "booking_reference": s.booking_reference,
                         "session_date": s.session_date.isoformat(), "status": s.status.value}
                        for s in stranded
                    ],
                )
        except errors.BookingError:
            db.rollback()
            raise

        try:
            db.commit()
            db.refresh(window)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("window_update_failed", window_id=window_id, error=str(e))
            raise

        logger.info("window_updated", window_id=window.id, changed=sorted(changes))
        self.audit.append(
            models.AuditActionType.AVAILABILITY_UPDATE,
            target_type=models.AuditTargetType.availability,
            target_id=window.id,
            previous_value=before,
            new_value=snapshot(window),
            details=f"Updated availability fields: {', '.join(sorted(changes)) or 'none'}",
            **_actor_fields(actor),
        )
        return window

    def deactivate_window(self, db: Session, window_id: int, reason: Optional[str] = None, actor: Optional[schemas.Actor] = None) -> models.AvailabilityWindow:
        window = self.get_window(db, window_id)
        before = snapshot(window)

        window.is_active = False
        window.deactivated_at = self.clock()
        window.deactivated_by = actor.id if actor else None
        window.deactivation_reason = reason
        try:
            db.commit()
            db.refresh(window)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("window_deactivate_failed", window_id=window_id, error=str(e))
            raise

        logger.info("window_deactivated", window_id=window.id, reason=reason)
        self.audit.append(
            models.AuditActionType.AVAILABILITY_DEACTIVATE,
            target_type=models.AuditTargetType.availability,
            target_id=window.id,
            previous_value=before,
            new_value=snapshot(window),
            details=f"Deactivated availability: {reason or 'no reason given'}",
            **_actor_fields(actor),
        )
        return window

    def reactivate_window(self, db: Session, window_id: int, actor: Optional[schemas.Actor] = None) -> models.AvailabilityWindow:
        window = self.get_window(db, window_id)
        if window.is_active:
            return window
        before = snapshot(window)

        self._ensure_no_overlap(db, window)
        window.is_active = True
        window.deactivated_at = None
        window.deactivated_by = None
        window.deactivation_reason = None
        window.updated_by = actor.id if actor else window.updated_by
        try:
            db.commit()
            db.refresh(window)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("window_reactivate_failed", window_id=window_id, error=str(e))
            raise

        logger.info("window_reactivated", window_id=window.id)
        self.audit.append(
            models.AuditActionType.AVAILABILITY_REACTIVATE,
            target_type=models.AuditTargetType.availability,
            target_id=window.id,
            previous_value=before,
            new_value=snapshot(window),
            details="Reactivated availability",
            **_actor_fields(actor),
        )
        return window

    # --- Blocked dates ---

    def block_date(self, db: Session, therapist_id: int, blocked_date: date, reason: Optional[str] = None, actor: Optional[schemas.Actor] = None) -> models.BlockedDate:
        if not isinstance(blocked_date, date) or isinstance(blocked_date, datetime):
            raise errors.ValidationError("blocked_date must be a calendar date")

        existing = db.query(models.BlockedDate).filter(
            models.BlockedDate.therapist_id == therapist_id,
            models.BlockedDate.blocked_date == blocked_date,
        ).first()
        if existing:
            return existing

        blocked = models.BlockedDate(
            therapist_id=therapist_id,
            blocked_date=blocked_date,
            reason=reason,
            created_by=actor.id if actor else None,
        )
        try:
            db.add(blocked)
            db.commit()
            db.refresh(blocked)
        except IntegrityError:
            db.rollback()
            return db.query(models.BlockedDate).filter(
                models.BlockedDate.therapist_id == therapist_id,
                models.BlockedDate.blocked_date == blocked_date,
            ).one()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("date_block_failed", therapist_id=therapist_id, date=blocked_date.isoformat(), error=str(e))
            raise

        logger.info("date_blocked", therapist_id=therapist_id, date=blocked_date.isoformat())
        self.audit.append(
            models.AuditActionType.DATE_BLOCK,
            target_type=models.AuditTargetType.blocked_date,
            target_id=blocked.id,
            new_value=schemas.BlockedDateResponse.model_validate(blocked).model_dump(mode="json"),
            details=f"Blocked {blocked_date.isoformat()} for therapist {therapist_id}: {reason or 'no reason given'}",
            **_actor_fields(actor),
        )
        return blocked

    def unblock_date(self, db: Session, therapist_id: int, blocked_date: date, actor: Optional[schemas.Actor] = None) -> bool:
        blocked = db.query(models.BlockedDate).filter(
            models.BlockedDate.therapist_id == therapist_id,
            models.BlockedDate.blocked_date == blocked_date,
        ).first()
        if blocked is None:
            raise errors.NotFoundError(f"{blocked_date.isoformat()} is not blocked for therapist {therapist_id}")

        before = schemas.BlockedDateResponse.model_validate(blocked).model_dump(mode="json")
        try:
            db.delete(blocked)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("date_unblock_failed", therapist_id=therapist_id, date=blocked_date.isoformat(), error=str(e))
            raise

        logger.info("date_unblocked", therapist_id=therapist_id, date=blocked_date.isoformat())
        self.audit.append(
            models.AuditActionType.DATE_UNBLOCK,
            target_type=models.AuditTargetType.blocked_date,
            target_id=before["id"],
            previous_value=before,
            details=f"Unblocked {blocked_date.isoformat()} for therapist {therapist_id}",
            **_actor_fields(actor),
        )
        return True
