# therapy_booking/services/session_lifecycle.py
import enum
import secrets
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..audit_chain import AuditChain, audit_chain as default_audit_chain
from ..config import get_settings
from ..notifications import LoggingNotificationDispatcher, NotificationDispatcher, NotificationEvent
from .conflict_service import BookingGuard, booking_guard, check_conflict

logger = structlog.get_logger(__name__)

Status = models.SessionStatus
Role = models.ActorRole

DEFAULT_DECLINE_REASON = "Not available at this time"
BOOKING_REFERENCE_ATTEMPTS = 10


class SessionEvent(str, enum.Enum):
    approve = "approve"
    decline = "decline"
    submit_payment = "submit_payment"
    verify_payment = "verify_payment"
    start_call = "start_call"
    end_call = "end_call"
    cancel = "cancel"


class Transition(NamedTuple):
    sources: FrozenSet[models.SessionStatus]
    target: models.SessionStatus
    parties: FrozenSet[models.ActorRole]
    action_type: models.AuditActionType
    notification: Optional[NotificationEvent] = None


NON_TERMINAL_STATUSES = frozenset(s for s in Status if not s.is_terminal)

TRANSITIONS: Dict[SessionEvent, Transition] = {
    SessionEvent.approve: Transition(
        frozenset({Status.pending_approval}), Status.approved,
        frozenset({Role.therapist}), models.AuditActionType.SESSION_STATUS_CHANGE,
        NotificationEvent.session_approved,
    ),
    SessionEvent.decline: Transition(
        frozenset({Status.pending_approval}), Status.declined,
        frozenset({Role.therapist}), models.AuditActionType.SESSION_STATUS_CHANGE,
        NotificationEvent.session_declined,
    ),
    SessionEvent.submit_payment: Transition(
        frozenset({Status.approved}), Status.payment_submitted,
        frozenset({Role.client}), models.AuditActionType.SESSION_STATUS_CHANGE,
    ),
    SessionEvent.verify_payment: Transition(
        frozenset({Status.payment_submitted}), Status.confirmed,
        frozenset({Role.therapist, Role.admin}), models.AuditActionType.SESSION_STATUS_CHANGE,
        NotificationEvent.payment_confirmed,
    ),
    SessionEvent.start_call: Transition(
        frozenset({Status.confirmed, Status.approved}), Status.in_progress,
        frozenset({Role.client, Role.therapist}), models.AuditActionType.VIDEO_CALL_START,
    ),
    SessionEvent.end_call: Transition(
        frozenset({Status.in_progress}), Status.completed,
        frozenset({Role.client, Role.therapist}), models.AuditActionType.VIDEO_CALL_END,
    ),
    SessionEvent.cancel: Transition(
        NON_TERMINAL_STATUSES, Status.cancelled,
        frozenset({Role.client, Role.therapist, Role.admin}), models.AuditActionType.SESSION_CANCEL,
    ),
}


def actor_parties(session: models.TherapySession, actor: schemas.Actor) -> FrozenSet[models.ActorRole]:
    """Roles the actor holds with respect to this particular session."""
    parties = set()
    if actor.role == Role.client and actor.id == session.client_id:
        parties.add(Role.client)
    if actor.role == Role.therapist and actor.id == session.therapist_id:
        parties.add(Role.therapist)
    if actor.role == Role.admin:
        parties.add(Role.admin)
    return frozenset(parties)


# --- Transition effects ---
# Each mutates the session for its event and returns the payload recorded in the audit entry.

def _approve(session, actor, payload, now):
    settings = get_settings()
    rate = payload.get("rate") or Decimal(settings.default_session_rate)
    session.approved_by = actor.id
    session.approved_at = now
    session.payment_status = models.PaymentStatus.pending
    session.session_rate = rate
    session.price = rate
    session.payment_instructions = settings.payment_instructions_template.format(
        amount=f"{rate.normalize():f}",
        number=payload.get("mpesa_number") or settings.mpesa_number,
        name=payload.get("mpesa_name") or settings.mpesa_name,
    )
    return {
        "session_rate": str(rate),
        "payment_instructions": session.payment_instructions,
        "approved_by": actor.id,
        "approved_at": now.isoformat(),
    }


def _decline(session, actor, payload, now):
    session.decline_reason = payload.get("reason") or DEFAULT_DECLINE_REASON
    return {"decline_reason": session.decline_reason}


def _submit_payment(session, actor, payload, now):
    proof: schemas.PaymentProof = payload["proof"]
    session.payment_proof = {
        "transaction_code": proof.transaction_code,
        "screenshot": proof.screenshot,
        "submitted_at": now.isoformat(),
    }
    session.payment_status = models.PaymentStatus.submitted
    return {"payment_proof": dict(session.payment_proof)}


def _verify_payment(session, actor, payload, now):
    session.payment_status = models.PaymentStatus.verified
    session.payment_verified_by = actor.id
    session.payment_verified_at = now
    return {"payment_verified_by": actor.id, "payment_verified_at": now.isoformat()}


def _start_call(session, actor, payload, now):
    session.video_call_started = now
    return {"video_call_started": now.isoformat()}


def _end_call(session, actor, payload, now):
    session.video_call_ended = now
    started = session.video_call_started or now
    minutes = Decimal(str((now - started).total_seconds())) / 60
    session.call_duration = int(minutes.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return {"video_call_ended": now.isoformat(), "call_duration": session.call_duration}


def _cancel(session, actor, payload, now):
    return {}


EFFECTS: Dict[SessionEvent, Callable] = {
    SessionEvent.approve: _approve,
    SessionEvent.decline: _decline,
    SessionEvent.submit_payment: _submit_payment,
    SessionEvent.verify_payment: _verify_payment,
    SessionEvent.start_call: _start_call,
    SessionEvent.end_call: _end_call,
    SessionEvent.cancel: _cancel,
}


def apply_transition(
    session: models.TherapySession,
    event: SessionEvent,
    actor: schemas.Actor,
    payload: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Tuple[models.SessionStatus, Dict[str, Any]]:
    """Apply ``event`` to ``session`` in memory.

    Authorization is checked first, then state legality; neither failure
    touches the session. Returns the previous status and the audit payload.
    """
    transition = TRANSITIONS[event]
    if not actor_parties(session, actor) & transition.parties:
        raise errors.AuthorizationError(f"Not permitted to {event.value.replace('_', ' ')} this session")
    if session.status not in transition.sources:
        raise errors.InvalidStateTransition(
            f"Cannot {event.value.replace('_', ' ')} a session that is {session.status.value}",
            current_status=session.status,
            event=event,
        )

    previous = session.status
    changes = EFFECTS[event](session, actor, payload or {}, now or models.utcnow())
    session.status = transition.target
    return previous, changes


def _coerce_actor(actor: Any) -> schemas.Actor:
    return schemas.parse_input(schemas.Actor, actor)


class SessionLifecycle:
    """Session state machine over persisted sessions.

    Each operation loads the session FOR UPDATE, applies one transition,
    commits, then appends one audit entry and fires any notification.
    """

    def __init__(
        self,
        audit: AuditChain = None,
        notifier: NotificationDispatcher = None,
        clock: Callable[[], datetime] = models.utcnow,
        guard: BookingGuard = None,
    ):
        self.audit = audit or default_audit_chain
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.clock = clock
        self.guard = guard or booking_guard

    # --- Queries ---

    def get_session(self, db: Session, session_id: int, for_update: bool = False) -> models.TherapySession:
        query = db.query(models.TherapySession).filter(models.TherapySession.id == session_id)
        if for_update:
            query = query.with_for_update()
        session = query.first()
        if session is None:
            raise errors.NotFoundError(f"Session {session_id} not found")
        return session

    def find_by_booking_reference(self, db: Session, reference: str) -> models.TherapySession:
        normalized = (reference or "").strip().upper()
        session = db.query(models.TherapySession).filter(
            models.TherapySession.booking_reference == normalized
        ).first()
        if session is None:
            raise errors.NotFoundError(f"No session with booking reference {normalized or reference!r}")
        return session

    def list_sessions(
        self,
        db: Session,
        therapist_id: Optional[int] = None,
        client_id: Optional[int] = None,
        statuses: Optional[Iterable[Any]] = None,
    ) -> List[models.TherapySession]:
        if therapist_id is None and client_id is None:
            raise errors.ValidationError("Either therapist_id or client_id is required")
        query = db.query(models.TherapySession)
        if therapist_id is not None:
            query = query.filter(models.TherapySession.therapist_id == therapist_id)
        if client_id is not None:
            query = query.filter(models.TherapySession.client_id == client_id)
        if statuses:
            try:
                wanted = [s if isinstance(s, Status) else Status(s) for s in statuses]
            except ValueError as e:
                raise errors.ValidationError(f"Unknown session status: {e}")
            query = query.filter(models.TherapySession.status.in_(wanted))
        return query.order_by(models.TherapySession.session_date, models.TherapySession.id).all()

    # --- Booking ---

    def _booking_reference(self, db: Session, session_date: datetime) -> str:
        prefix = get_settings().booking_reference_prefix
        for _ in range(BOOKING_REFERENCE_ATTEMPTS):
            reference = f"{prefix}-{session_date.strftime('%Y%m%d')}-{secrets.randbelow(10000):04d}"
            taken = db.query(models.TherapySession.id).filter(
                models.TherapySession.booking_reference == reference
            ).first()
            if taken is None:
                return reference
        raise errors.ConflictError(f"Could not allocate a booking reference for {session_date.date()}")

    def request_booking(self, db: Session, booking: Any, actor: Any = None) -> models.TherapySession:
        """Create a PendingApproval session after the conflict check passes.

        The check and the insert run while the therapist's schedule is held, so
        two racing requests for overlapping times cannot both be stored.
        """
        request = schemas.parse_input(schemas.BookingRequest, booking)
        if actor is not None:
            actor = _coerce_actor(actor)
            if not (actor.role == Role.admin or (actor.role == Role.client and actor.id == request.client_id)):
                raise errors.AuthorizationError("Not permitted to book on behalf of this client")

        duration = get_settings().session_duration_minutes
        try:
            with self.guard.hold(db, request.therapist_id):
                conflict = check_conflict(db, request.therapist_id, request.session_date, duration)
                if conflict.is_conflict:
                    existing = conflict.conflicting_session
                    raise errors.ConflictError(
                        f"Therapist already has a session at {existing.session_date.isoformat()}",
                        conflicts=[existing.model_dump(mode="json")],
                    )

                session = models.TherapySession(
                    booking_reference=self._booking_reference(db, request.session_date),
                    client_id=request.client_id,
                    therapist_id=request.therapist_id,
                    session_type=request.session_type,
                    session_date=request.session_date,
                    duration_minutes=duration,
                    status=Status.pending_approval,
                    payment_status=models.PaymentStatus.pending,
                    meeting_link=f"room-{uuid.uuid4()}",
                )
                db.add(session)
                db.commit()
            db.refresh(session)
        except errors.BookingError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("booking_failed", therapist_id=request.therapist_id, client_id=request.client_id, error=str(e))
            raise

        logger.info(
            "session_requested",
            session_id=session.id,
            booking_reference=session.booking_reference,
            therapist_id=session.therapist_id,
            client_id=session.client_id,
        )
        self.audit.append(
            models.AuditActionType.SESSION_CREATE,
            actor_id=actor.id if actor else request.client_id,
            actor_role=actor.role if actor else Role.client,
            target_type=models.AuditTargetType.session,
            target_id=session.id,
            new_value=schemas.SessionResponse.model_validate(session).model_dump(mode="json"),
            details=f"Session {session.booking_reference} requested for {session.session_date.isoformat()}",
        )
        return session

    # --- Transitions ---

    def transition(
        self,
        db: Session,
        session_id: int,
        event: SessionEvent,
        actor: Any,
        payload: Optional[Dict[str, Any]] = None,
    ) -> models.TherapySession:
        actor = _coerce_actor(actor)
        event = SessionEvent(event)
        session = self.get_session(db, session_id, for_update=True)

        try:
            previous, changes = apply_transition(session, event, actor, payload, self.clock())
        except errors.BookingError:
            db.rollback()
            raise

        try:
            db.commit()
            db.refresh(session)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("session_transition_failed", session_id=session_id, transition=event.value, error=str(e))
            raise

        logger.info(
            "session_transitioned",
            session_id=session.id,
            transition=event.value,
            previous_status=previous.value,
            new_status=session.status.value,
            actor_id=actor.id,
        )
        transition = TRANSITIONS[event]
        self.audit.append(
            transition.action_type,
            actor_id=actor.id,
            actor_role=actor.role,
            target_type=models.AuditTargetType.session,
            target_id=session.id,
            previous_value={"status": previous.value},
            new_value={"status": session.status.value, **changes},
            details=f"{event.value}: {previous.value} -> {session.status.value}",
        )
        if transition.notification is not None:
            self._notify(transition.notification, session)
        return session

    def _notify(self, event: NotificationEvent, session: models.TherapySession) -> None:
        try:
            self.notifier.notify(event, schemas.SessionResponse.model_validate(session))
        except Exception as e:
            logger.warning("notification_failed", notification=event.value, session_id=session.id, error=str(e))

    def approve(self, db: Session, session_id: int, actor: Any, rate: Any = None,
                mpesa_number: Optional[str] = None, mpesa_name: Optional[str] = None) -> models.TherapySession:
        if rate is not None:
            try:
                rate = Decimal(str(rate))
            except InvalidOperation:
                raise errors.ValidationError(f"Invalid session rate: {rate!r}")
            if rate <= 0:
                raise errors.ValidationError("Session rate must be positive")
        payload = {"rate": rate, "mpesa_number": mpesa_number, "mpesa_name": mpesa_name}
        return self.transition(db, session_id, SessionEvent.approve, actor, payload)

    def decline(self, db: Session, session_id: int, actor: Any, reason: Optional[str] = None) -> models.TherapySession:
        return self.transition(db, session_id, SessionEvent.decline, actor, {"reason": reason})

    def submit_payment(self, db: Session, session_id: int, actor: Any, proof: Any) -> models.TherapySession:
        proof = schemas.parse_input(schemas.PaymentProof, proof)
        return self.transition(db, session_id, SessionEvent.submit_payment, actor, {"proof": proof})

    def verify_payment(self, db: Session, session_id: int, actor: Any) -> models.TherapySession:
        return self.transition(db, session_id, SessionEvent.verify_payment, actor)

    def start_call(self, db: Session, session_id: int, actor: Any) -> models.TherapySession:
        return self.transition(db, session_id, SessionEvent.start_call, actor)

    def end_call(self, db: Session, session_id: int, actor: Any) -> models.TherapySession:
        return self.transition(db, session_id, SessionEvent.end_call, actor)

    def cancel(self, db: Session, session_id: int, actor: Any) -> models.TherapySession:
        return self.transition(db, session_id, SessionEvent.cancel, actor)
