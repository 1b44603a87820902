# therapy_booking/schemas.py
import re
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional, Dict, Any, Type, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .models import (
    WindowType, RecurrenceFrequency, SessionType, SessionStatus, PaymentStatus, ActorRole
)
from . import errors

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_input(schema: Type[SchemaT], data: Any) -> SchemaT:
    """Validate a mapping (or pass through an instance), raising the booking ValidationError."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
        )
        raise errors.ValidationError(f"Invalid {schema.__name__}: {problems}", {"errors": e.errors(include_url=False)})


def normalize_time(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not isinstance(v, str) or not TIME_PATTERN.match(v):
        raise ValueError("Time must be in HH:MM format (00:00-23:59)")
    hours, minutes = v.split(":")
    return f"{int(hours):02d}:{minutes}"


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Actor(BaseModel):
    """Caller identity as resolved by the authentication layer."""
    model_config = ConfigDict(frozen=True)

    id: int
    role: ActorRole


# ==================== AVAILABILITY ====================

class AvailabilityWindowBase(BaseModel):
    start_time: str
    end_time: str
    title: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)
    session_types: Optional[List[SessionType]] = None
    max_sessions: Optional[int] = Field(None, ge=1)

    recurrence_frequency: RecurrenceFrequency = RecurrenceFrequency.weekly
    recurrence_start_date: Optional[date] = None
    recurrence_end_date: Optional[date] = None
    weeks_of_month: Optional[List[int]] = None

    timezone: Optional[str] = None
    buffer_minutes: int = Field(15, ge=0, le=60)
    min_advance_booking_hours: int = Field(24, ge=0)
    max_advance_booking_days: int = Field(30, ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time_format(cls, v):
        return normalize_time(v)

    @field_validator("weeks_of_month")
    @classmethod
    def validate_weeks_of_month(cls, v):
        if v is not None and any(week < 1 or week > 5 for week in v):
            raise ValueError("weeks_of_month entries must be between 1 and 5")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v


class AvailabilityWindowCreate(AvailabilityWindowBase):
    therapist_id: int
    window_type: WindowType
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    specific_date: Optional[date] = None

    @model_validator(mode="after")
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")

        if self.window_type == WindowType.recurring:
            if self.day_of_week is None:
                raise ValueError("day_of_week is required for recurring windows")
            if self.specific_date is not None:
                raise ValueError("specific_date is not allowed for recurring windows")
        else:
            if self.specific_date is None:
                raise ValueError("specific_date is required for one-time and exception windows")
            if self.day_of_week is not None:
                raise ValueError("day_of_week is not allowed for one-time and exception windows")

        if (self.recurrence_start_date and self.recurrence_end_date
                and self.recurrence_end_date < self.recurrence_start_date):
            raise ValueError("recurrence_end_date must not be before recurrence_start_date")
        return self


class AvailabilityWindowUpdate(BaseModel):
    """Patch for an existing window. The window type and owner are fixed."""
    model_config = ConfigDict(extra="forbid")

    start_time: Optional[str] = None
    end_time: Optional[str] = None
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    specific_date: Optional[date] = None
    title: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)
    session_types: Optional[List[SessionType]] = None
    max_sessions: Optional[int] = Field(None, ge=1)
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_start_date: Optional[date] = None
    recurrence_end_date: Optional[date] = None
    weeks_of_month: Optional[List[int]] = None
    timezone: Optional[str] = None
    buffer_minutes: Optional[int] = Field(None, ge=0, le=60)
    min_advance_booking_hours: Optional[int] = Field(None, ge=0)
    max_advance_booking_days: Optional[int] = Field(None, ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time_format(cls, v):
        return normalize_time(v)


class AvailabilityWindowResponse(BaseSchema):
    id: int
    therapist_id: int
    window_type: WindowType
    day_of_week: Optional[int] = None
    specific_date: Optional[date] = None
    start_time: str
    end_time: str
    duration_minutes: Optional[int] = None
    is_active: bool
    title: Optional[str] = None
    notes: Optional[str] = None
    session_types: Optional[List[SessionType]] = None
    max_sessions: Optional[int] = None
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_start_date: Optional[date] = None
    recurrence_end_date: Optional[date] = None
    weeks_of_month: Optional[List[int]] = None
    timezone: str
    buffer_minutes: Optional[int] = None
    min_advance_booking_hours: Optional[int] = None
    max_advance_booking_days: Optional[int] = None
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[int] = None
    deactivation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WindowListFilters(BaseModel):
    active_only: bool = True
    window_type: Optional[WindowType] = None
    include_expired: bool = False


class GroupedWindows(BaseModel):
    recurring: List[AvailabilityWindowResponse] = []
    one_time: List[AvailabilityWindowResponse] = []
    exceptions: List[AvailabilityWindowResponse] = []
    windows: List[AvailabilityWindowResponse] = []
    total: int = 0


class BulkCreateError(BaseModel):
    index: int
    error: str


class BulkCreateResult(BaseModel):
    created: List[AvailabilityWindowResponse] = []
    errors: List[BulkCreateError] = []


class BlockedDateResponse(BaseSchema):
    id: int
    therapist_id: int
    blocked_date: date
    reason: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None


# ==================== SLOTS ====================

class Slot(BaseModel):
    """A bookable interval in the window's local wall-clock time."""
    model_config = ConfigDict(frozen=True)

    start_time: str
    end_time: str
    starts_at: datetime
    ends_at: datetime
    window_id: int


class SlotAvailability(BaseModel):
    available: bool
    reason: Optional[str] = None
    window_id: Optional[int] = None
    suggestions: List[Slot] = []
    earliest_booking: Optional[datetime] = None
    latest_booking: Optional[datetime] = None


class DailyAvailability(BaseModel):
    date: date
    windows: int
    total_slots: int
    open_slots: int
    booked_sessions: int


class AvailabilityReport(BaseModel):
    therapist_id: int
    start_date: date
    end_date: date
    days: List[DailyAvailability] = []
    total_slots: int = 0
    open_slots: int = 0
    booked_sessions: int = 0
    utilization_rate: float = 0.0


# ==================== SESSIONS ====================

class BookingRequest(BaseModel):
    client_id: int
    therapist_id: int
    session_type: SessionType
    session_date: datetime

    @field_validator("session_date")
    @classmethod
    def require_timezone(cls, v):
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("session_date must be timezone-aware")
        return v


class PaymentProof(BaseModel):
    transaction_code: str = Field(..., min_length=1, max_length=50)
    screenshot: Optional[str] = None

    @field_validator("transaction_code")
    @classmethod
    def strip_code(cls, v):
        v = v.strip().upper()
        if not v:
            raise ValueError("transaction_code is required")
        return v


class SessionResponse(BaseSchema):
    id: int
    booking_reference: str
    client_id: int
    therapist_id: int
    session_type: SessionType
    session_date: datetime
    duration_minutes: int
    status: SessionStatus
    payment_status: PaymentStatus
    price: Optional[Decimal] = None
    session_rate: Optional[Decimal] = None
    payment_instructions: Optional[str] = None
    payment_proof: Optional[Dict[str, Any]] = None
    payment_verified_by: Optional[int] = None
    payment_verified_at: Optional[datetime] = None
    meeting_link: Optional[str] = None
    video_call_started: Optional[datetime] = None
    video_call_ended: Optional[datetime] = None
    call_duration: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConflictResult(BaseModel):
    is_conflict: bool
    conflicting_session: Optional[SessionResponse] = None


# ==================== AUDIT ====================

class AuditLogEntry(BaseSchema):
    sequence: int
    timestamp: datetime
    action_type: str
    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[int] = None
    previous_value: Optional[Any] = None
    new_value: Optional[Any] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    log_hash: str
    previous_hash: Optional[str] = None


class EntryVerification(BaseModel):
    index: int
    sequence: Optional[int] = None
    valid: bool
    reason: Optional[str] = None


class ChainVerification(BaseModel):
    valid: bool
    first_break_index: Optional[int] = None
    entries_checked: int = 0
    results: List[EntryVerification] = []
