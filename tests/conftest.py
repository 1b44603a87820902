# tests/conftest.py
from datetime import date, datetime, timedelta, timezone
from itertools import count
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.orm import sessionmaker

from therapy_booking import models, schemas
from therapy_booking.audit_chain import AuditChain
from therapy_booking.database import build_engine, create_tables
from therapy_booking.engine import BookingEngine
from therapy_booking.notifications import NotificationDispatcher
from therapy_booking.services.availability_service import AvailabilityService
from therapy_booking.services.conflict_service import BookingGuard
from therapy_booking.services.session_lifecycle import SessionLifecycle

NAIROBI = ZoneInfo("Africa/Nairobi")

# 2025-01-06 is a Monday
MONDAY = date(2025, 1, 6)
NEXT_MONDAY = date(2025, 1, 13)

THERAPIST_ID = 10
CLIENT_ID = 20

THERAPIST = schemas.Actor(id=THERAPIST_ID, role="therapist")
OTHER_THERAPIST = schemas.Actor(id=11, role="therapist")
CLIENT = schemas.Actor(id=CLIENT_ID, role="client")
OTHER_CLIENT = schemas.Actor(id=21, role="client")
ADMIN = schemas.Actor(id=1, role="admin")

_references = count(1)


def local(day: date, hhmm: str) -> datetime:
    """Aware datetime for a Nairobi wall-clock time."""
    hours, minutes = hhmm.split(":")
    return datetime(day.year, day.month, day.day, int(hours), int(minutes), tzinfo=NAIROBI)


def recurring(day_of_week=1, start="09:00", end="12:00", therapist_id=THERAPIST_ID, **extra):
    return {
        "therapist_id": therapist_id,
        "window_type": "recurring",
        "day_of_week": day_of_week,
        "start_time": start,
        "end_time": end,
        **extra,
    }


def dated(specific_date, start="09:00", end="12:00", window_type="one-time", therapist_id=THERAPIST_ID, **extra):
    return {
        "therapist_id": therapist_id,
        "window_type": window_type,
        "specific_date": specific_date,
        "start_time": start,
        "end_time": end,
        **extra,
    }


def add_session(db, start, status=models.SessionStatus.confirmed, therapist_id=THERAPIST_ID, client_id=CLIENT_ID):
    """Insert a session row directly, bypassing the lifecycle."""
    session = models.TherapySession(
        booking_reference=f"SS-TEST-{next(_references):04d}",
        client_id=client_id,
        therapist_id=therapist_id,
        session_type=models.SessionType.individual,
        session_date=start,
        duration_minutes=60,
        status=status,
        payment_status=models.PaymentStatus.pending,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    def notify(self, event, session):
        self.sent.append((event.value, session.id))


class FailingNotifier(NotificationDispatcher):
    def notify(self, event, session):
        raise RuntimeError("SMS gateway down")


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    # Wednesday 2025-01-01 09:00 Nairobi
    return FakeClock(datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc))


@pytest.fixture
def audit(session_factory):
    return AuditChain(session_factory)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def availability(audit, clock):
    return AvailabilityService(audit, clock)


@pytest.fixture
def lifecycle(audit, notifier, clock):
    return SessionLifecycle(audit, notifier, clock, guard=BookingGuard())


@pytest.fixture
def booking_engine(session_factory, audit, notifier, clock):
    return BookingEngine(session_factory, audit=audit, notifier=notifier, clock=clock, guard=BookingGuard())
