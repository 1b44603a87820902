# therapy_booking/models.py
from datetime import date, datetime, timezone
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index,
    UniqueConstraint, event
)
from sqlalchemy.types import TypeDecorator
from sqlalchemy.sql import func

from .database import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always comes back as UTC (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enum Classes
class WindowType(str, enum.Enum):
    recurring = "recurring"
    one_time = "one-time"
    exception = "exception"


class RecurrenceFrequency(str, enum.Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"


class SessionType(str, enum.Enum):
    individual = "Individual"
    couples = "Couples"
    family = "Family"
    group = "Group"


class SessionStatus(str, enum.Enum):
    pending_approval = "Pending Approval"
    approved = "Approved"
    declined = "Declined"
    payment_submitted = "Payment Submitted"
    confirmed = "Confirmed"
    in_progress = "In Progress"
    completed = "Completed"
    cancelled = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def blocks_time(self) -> bool:
        """Whether a session in this status occupies its time interval."""
        return self not in RELEASED_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.declined, SessionStatus.completed, SessionStatus.cancelled})
# Sessions in these states no longer hold their slot
RELEASED_STATUSES = frozenset({SessionStatus.declined, SessionStatus.cancelled})


class PaymentStatus(str, enum.Enum):
    pending = "Pending"
    submitted = "Submitted"
    verified = "Verified"


class ActorRole(str, enum.Enum):
    client = "client"
    therapist = "therapist"
    admin = "admin"


class AuditActionType(str, enum.Enum):
    AVAILABILITY_CREATE = "AVAILABILITY_CREATE"
    AVAILABILITY_UPDATE = "AVAILABILITY_UPDATE"
    AVAILABILITY_DEACTIVATE = "AVAILABILITY_DEACTIVATE"
    AVAILABILITY_REACTIVATE = "AVAILABILITY_REACTIVATE"
    AVAILABILITY_BULK_CREATE = "AVAILABILITY_BULK_CREATE"
    DATE_BLOCK = "DATE_BLOCK"
    DATE_UNBLOCK = "DATE_UNBLOCK"
    SESSION_CREATE = "SESSION_CREATE"
    SESSION_STATUS_CHANGE = "SESSION_STATUS_CHANGE"
    SESSION_CANCEL = "SESSION_CANCEL"
    VIDEO_CALL_START = "VIDEO_CALL_START"
    VIDEO_CALL_END = "VIDEO_CALL_END"


class AuditTargetType(str, enum.Enum):
    availability = "Availability"
    blocked_date = "BlockedDate"
    session = "Session"


def to_minutes(hhmm: str) -> int:
    """'09:30' -> 570"""
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def js_weekday(d: date) -> int:
    """Weekday numbered 0=Sunday .. 6=Saturday."""
    return (d.weekday() + 1) % 7


# ==================== AVAILABILITY ====================

class AvailabilityWindow(Base):
    """Declared availability for a therapist, polymorphic on window_type"""
    __tablename__ = "availability_windows"
    __table_args__ = (
        Index('idx_windows_therapist_active_type', 'therapist_id', 'is_active', 'window_type'),
        Index('idx_windows_therapist_day', 'therapist_id', 'day_of_week', 'is_active'),
        Index('idx_windows_therapist_date', 'therapist_id', 'specific_date', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    therapist_id = Column(Integer, nullable=False, index=True)
    window_type = Column(String(20), nullable=False)

    # Exactly one of these is set, depending on the window type
    day_of_week = Column(Integer, nullable=True)  # 0=Sunday, 6=Saturday
    specific_date = Column(Date, nullable=True)

    # Wall-clock HH:MM in the window's timezone
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    duration_minutes = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    title = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    session_types = Column(JSON, nullable=True)
    max_sessions = Column(Integer, nullable=True)  # None = unlimited

    # Recurrence pattern (recurring windows only)
    recurrence_frequency = Column(String(20), default=RecurrenceFrequency.weekly.value)
    recurrence_start_date = Column(Date, nullable=True)
    recurrence_end_date = Column(Date, nullable=True)
    weeks_of_month = Column(JSON, nullable=True)

    timezone = Column(String(50), nullable=False)
    buffer_minutes = Column(Integer, default=15)
    min_advance_booking_hours = Column(Integer, default=24)
    max_advance_booking_days = Column(Integer, default=30)

    # Audit fields
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    deactivated_at = Column(UTCDateTime, nullable=True)
    deactivated_by = Column(Integer, nullable=True)
    deactivation_reason = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {
        "polymorphic_on": window_type,
    }

    @property
    def start_minutes(self) -> int:
        return to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return to_minutes(self.end_time)

    def matches_date(self, target: date) -> bool:
        raise NotImplementedError

    def day_key(self):
        """Key identifying the calendar day(s) this window applies to."""
        raise NotImplementedError

    def is_expired(self, today: date) -> bool:
        return False

    def overlaps(self, other: "AvailabilityWindow") -> bool:
        if self.window_type != other.window_type or self.day_key() != other.day_key():
            return False
        return max(self.start_minutes, other.start_minutes) < min(self.end_minutes, other.end_minutes)

    def __repr__(self):
        return f"<{type(self).__name__} id={self.id} therapist={self.therapist_id} {self.start_time}-{self.end_time}>"


class RecurringWindow(AvailabilityWindow):
    __mapper_args__ = {"polymorphic_identity": WindowType.recurring.value}

    def day_key(self):
        return ("dow", self.day_of_week)

    def matches_date(self, target: date) -> bool:
        if js_weekday(target) != self.day_of_week:
            return False
        if self.recurrence_start_date and target < self.recurrence_start_date:
            return False
        if self.recurrence_end_date and target > self.recurrence_end_date:
            return False

        frequency = self.recurrence_frequency or RecurrenceFrequency.weekly.value
        if frequency == RecurrenceFrequency.biweekly.value and self.recurrence_start_date:
            weeks_since_start = (target - self.recurrence_start_date).days // 7
            return weeks_since_start % 2 == 0
        if frequency == RecurrenceFrequency.monthly.value and self.weeks_of_month:
            return ((target.day - 1) // 7 + 1) in self.weeks_of_month
        return True

    def is_expired(self, today: date) -> bool:
        return bool(self.recurrence_end_date and self.recurrence_end_date < today)


class OneTimeWindow(AvailabilityWindow):
    __mapper_args__ = {"polymorphic_identity": WindowType.one_time.value}

    def day_key(self):
        return ("date", self.specific_date)

    def matches_date(self, target: date) -> bool:
        return self.specific_date == target

    def is_expired(self, today: date) -> bool:
        return self.specific_date is not None and self.specific_date < today


class ExceptionWindow(OneTimeWindow):
    # Generates slots exactly like a one-time window for its date
    __mapper_args__ = {"polymorphic_identity": WindowType.exception.value}


WINDOW_CLASSES = {
    WindowType.recurring: RecurringWindow,
    WindowType.one_time: OneTimeWindow,
    WindowType.exception: ExceptionWindow,
}


class BlockedDate(Base):
    """A whole calendar day on which a therapist takes no bookings"""
    __tablename__ = "blocked_dates"
    __table_args__ = (
        UniqueConstraint('therapist_id', 'blocked_date', name='uq_therapist_blocked_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    therapist_id = Column(Integer, nullable=False, index=True)
    blocked_date = Column(Date, nullable=False)
    reason = Column(String(255), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


# ==================== SESSIONS ====================

class TherapySession(Base):
    """One therapy appointment, mutated only through the session lifecycle"""
    __tablename__ = "therapy_sessions"
    __table_args__ = (
        Index('idx_sessions_therapist_date', 'therapist_id', 'session_date'),
        Index('idx_sessions_client_date', 'client_id', 'session_date'),
        Index('idx_sessions_status_date', 'status', 'session_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    booking_reference = Column(String(20), unique=True, nullable=False)
    client_id = Column(Integer, nullable=False)
    therapist_id = Column(Integer, nullable=False)

    session_type = Column(SQLAlchemyEnum(SessionType, name='session_type'), nullable=False)
    session_date = Column(UTCDateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)

    status = Column(SQLAlchemyEnum(SessionStatus, name='session_status'), default=SessionStatus.pending_approval, nullable=False, index=True)

    # Payment
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.pending, nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    session_rate = Column(Numeric(10, 2), nullable=True)
    payment_instructions = Column(Text, nullable=True)
    payment_proof = Column(JSON, nullable=True)  # {transaction_code, screenshot, submitted_at}
    payment_verified_by = Column(Integer, nullable=True)
    payment_verified_at = Column(UTCDateTime, nullable=True)

    # Video call
    meeting_link = Column(String(255), nullable=True)
    video_call_started = Column(UTCDateTime, nullable=True)
    video_call_ended = Column(UTCDateTime, nullable=True)
    call_duration = Column(Integer, nullable=True)  # minutes

    # Approval
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(UTCDateTime, nullable=True)
    decline_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<TherapySession id={self.id} ref={self.booking_reference} status={self.status}>"


class ScheduleLock(Base):
    """Per-therapist row locked FOR UPDATE around check-then-insert booking"""
    __tablename__ = "schedule_locks"

    therapist_id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


# ==================== AUDIT ====================

class AuditLog(Base):
    """Append-only, hash-chained audit entry"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_action_date', 'action_type', 'timestamp'),
        Index('idx_audit_target', 'target_type', 'target_id', 'timestamp'),
        Index('idx_audit_actor_date', 'actor_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, index=True)
    sequence = Column(Integer, unique=True, nullable=False)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    action_type = Column(String(50), nullable=False)
    actor_id = Column(Integer, nullable=True)
    actor_role = Column(String(20), nullable=True)
    target_type = Column(String(30), nullable=True)
    target_id = Column(Integer, nullable=True)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    details = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    # Tamper-evident fields
    log_hash = Column(String(128), unique=True, nullable=False)
    previous_hash = Column(String(128), nullable=True)


class AuditChainState(Base):
    """Singleton row owning the chain tail"""
    __tablename__ = "audit_chain_state"

    id = Column(Integer, primary_key=True, default=1)
    tail_hash = Column(String(128), nullable=True)
    sequence = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("Audit log entries cannot be modified")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ValueError("Audit log entries cannot be deleted")
