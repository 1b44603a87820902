# tests/test_session_lifecycle.py
import re
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from therapy_booking import errors, models, schemas
from therapy_booking.audit_chain import AuditChain
from therapy_booking.database import build_engine
from therapy_booking.services.conflict_service import BookingGuard
from therapy_booking.services.session_lifecycle import (
    TRANSITIONS, SessionEvent, SessionLifecycle, apply_transition,
)

from conftest import (
    ADMIN, CLIENT, CLIENT_ID, MONDAY, OTHER_CLIENT, OTHER_THERAPIST, THERAPIST, THERAPIST_ID,
    FailingNotifier, add_session, local,
)

Status = models.SessionStatus


def book(lifecycle, db, hhmm="10:00", **overrides):
    request = {
        "client_id": CLIENT_ID,
        "therapist_id": THERAPIST_ID,
        "session_type": "Individual",
        "session_date": local(MONDAY, hhmm),
        **overrides,
    }
    return lifecycle.request_booking(db, request)


def test_request_booking_creates_pending_session(lifecycle, db, audit):
    session = book(lifecycle, db)

    assert session.status == Status.pending_approval
    assert session.payment_status == models.PaymentStatus.pending
    assert session.duration_minutes == 60
    assert re.fullmatch(r"SS-20250106-\d{4}", session.booking_reference)
    assert re.fullmatch(r"room-[0-9a-f-]{36}", session.meeting_link)
    assert session.session_date == local(MONDAY, "10:00")

    entries = audit.list_entries(target_type="Session", target_id=session.id)
    assert [e.action_type for e in entries] == ["SESSION_CREATE"]
    assert entries[0].new_value["status"] == "Pending Approval"


def test_request_booking_validates_input(lifecycle, db):
    with pytest.raises(errors.ValidationError):
        book(lifecycle, db, session_date=datetime(2025, 1, 6, 10, 0))
    with pytest.raises(errors.ValidationError):
        book(lifecycle, db, session_type="Massage")
    assert db.query(models.TherapySession).count() == 0


def test_request_booking_checks_booking_actor(lifecycle, db):
    with pytest.raises(errors.AuthorizationError):
        lifecycle.request_booking(db, {
            "client_id": CLIENT_ID, "therapist_id": THERAPIST_ID,
            "session_type": "Couples", "session_date": local(MONDAY, "10:00"),
        }, actor=OTHER_CLIENT)

    session = lifecycle.request_booking(db, {
        "client_id": CLIENT_ID, "therapist_id": THERAPIST_ID,
        "session_type": "Couples", "session_date": local(MONDAY, "10:00"),
    }, actor=CLIENT)
    assert session.session_type == models.SessionType.couples


def test_overlapping_request_rejected_and_nothing_created(lifecycle, db, audit):
    add_session(db, local(MONDAY, "10:00"), status=Status.confirmed)

    with pytest.raises(errors.ConflictError) as exc_info:
        book(lifecycle, db, "10:30")

    assert exc_info.value.conflicts[0]["status"] == "Confirmed"
    assert db.query(models.TherapySession).count() == 1
    assert audit.list_entries(action_type="SESSION_CREATE") == []


def test_declined_session_cannot_be_approved(lifecycle, db, notifier):
    session = book(lifecycle, db)
    assert session.status == Status.pending_approval

    session = lifecycle.decline(db, session.id, THERAPIST, reason="unavailable")
    assert session.status == Status.declined
    assert session.decline_reason == "unavailable"

    with pytest.raises(errors.InvalidStateTransition):
        lifecycle.approve(db, session.id, THERAPIST)
    assert lifecycle.get_session(db, session.id).status == Status.declined
    assert notifier.sent == [("session_declined", session.id)]


def test_decline_default_reason(lifecycle, db):
    session = book(lifecycle, db)
    session = lifecycle.decline(db, session.id, THERAPIST)
    assert session.decline_reason == "Not available at this time"


def test_happy_path_through_completion(lifecycle, db, clock, audit, notifier):
    session = book(lifecycle, db)

    session = lifecycle.approve(db, session.id, THERAPIST, rate=3000, mpesa_number="0700000000", mpesa_name="Dr. Wanjiru")
    assert session.status == Status.approved
    assert session.approved_by == THERAPIST_ID
    assert session.approved_at == clock.now
    assert session.price == 3000
    assert session.payment_instructions == (
        "Send KSh 3000 to M-Pesa: 0700000000 (Dr. Wanjiru). Use your name as reference."
    )

    session = lifecycle.submit_payment(db, session.id, CLIENT, {"transaction_code": " qk12abc "})
    assert session.status == Status.payment_submitted
    assert session.payment_status == models.PaymentStatus.submitted
    assert session.payment_proof["transaction_code"] == "QK12ABC"

    session = lifecycle.verify_payment(db, session.id, THERAPIST)
    assert session.status == Status.confirmed
    assert session.payment_status == models.PaymentStatus.verified
    assert session.payment_verified_by == THERAPIST_ID

    session = lifecycle.start_call(db, session.id, CLIENT)
    assert session.status == Status.in_progress
    started = session.video_call_started

    clock.advance(minutes=45)
    session = lifecycle.end_call(db, session.id, THERAPIST)
    assert session.status == Status.completed
    assert session.call_duration == 45
    assert session.video_call_ended - started == clock.now - started

    entries = audit.list_entries(target_type="Session", target_id=session.id)
    assert [e.action_type for e in entries] == [
        "SESSION_CREATE",
        "SESSION_STATUS_CHANGE",
        "SESSION_STATUS_CHANGE",
        "SESSION_STATUS_CHANGE",
        "VIDEO_CALL_START",
        "VIDEO_CALL_END",
    ]
    transitions = [(e.previous_value["status"], e.new_value["status"]) for e in entries[1:]]
    assert transitions == [
        ("Pending Approval", "Approved"),
        ("Approved", "Payment Submitted"),
        ("Payment Submitted", "Confirmed"),
        ("Confirmed", "In Progress"),
        ("In Progress", "Completed"),
    ]
    assert notifier.sent == [("session_approved", session.id), ("payment_confirmed", session.id)]


def test_approve_uses_default_rate(lifecycle, db):
    session = book(lifecycle, db)
    session = lifecycle.approve(db, session.id, THERAPIST)
    assert session.session_rate == 2500
    assert session.payment_instructions.startswith("Send KSh 2500 to M-Pesa")


def test_approve_rejects_bad_rate(lifecycle, db):
    session = book(lifecycle, db)
    with pytest.raises(errors.ValidationError):
        lifecycle.approve(db, session.id, THERAPIST, rate=0)
    with pytest.raises(errors.ValidationError):
        lifecycle.approve(db, session.id, THERAPIST, rate="lots")
    assert lifecycle.get_session(db, session.id).status == Status.pending_approval


def test_call_can_start_from_approved(lifecycle, db):
    session = book(lifecycle, db)
    lifecycle.approve(db, session.id, THERAPIST)

    session = lifecycle.start_call(db, session.id, THERAPIST)
    assert session.status == Status.in_progress


@pytest.mark.parametrize("elapsed,expected", [
    ({"minutes": 44, "seconds": 30}, 45),
    ({"minutes": 42, "seconds": 30}, 43),
    ({"minutes": 42, "seconds": 29}, 42),
    ({"seconds": 20}, 0),
])
def test_call_duration_rounds_half_minutes_up(lifecycle, db, clock, elapsed, expected):
    session = book(lifecycle, db)
    lifecycle.approve(db, session.id, THERAPIST)
    lifecycle.start_call(db, session.id, CLIENT)

    clock.advance(**elapsed)
    session = lifecycle.end_call(db, session.id, CLIENT)

    assert session.call_duration == expected


def test_admin_can_verify_payment(lifecycle, db):
    session = book(lifecycle, db)
    lifecycle.approve(db, session.id, THERAPIST)
    lifecycle.submit_payment(db, session.id, CLIENT, {"transaction_code": "ABC123"})

    session = lifecycle.verify_payment(db, session.id, ADMIN)
    assert session.status == Status.confirmed
    assert session.payment_verified_by == ADMIN.id


def test_submit_payment_requires_transaction_code(lifecycle, db):
    session = book(lifecycle, db)
    lifecycle.approve(db, session.id, THERAPIST)

    with pytest.raises(errors.ValidationError):
        lifecycle.submit_payment(db, session.id, CLIENT, {"transaction_code": "   "})
    assert lifecycle.get_session(db, session.id).status == Status.approved


@pytest.mark.parametrize("event,actor", [
    ("approve", OTHER_THERAPIST),
    ("approve", CLIENT),
    ("approve", ADMIN),
    ("decline", CLIENT),
    ("cancel", OTHER_CLIENT),
    ("cancel", OTHER_THERAPIST),
])
def test_unauthorized_actor_rejected_without_change(lifecycle, db, audit, event, actor):
    session = book(lifecycle, db)

    with pytest.raises(errors.AuthorizationError):
        lifecycle.transition(db, session.id, event, actor)

    assert lifecycle.get_session(db, session.id).status == Status.pending_approval
    assert len(audit.list_entries(target_type="Session")) == 1


def test_authorization_checked_before_state(lifecycle, db):
    session = book(lifecycle, db)
    lifecycle.decline(db, session.id, THERAPIST)

    # Illegal from Declined, but the stranger only learns it is not permitted
    with pytest.raises(errors.AuthorizationError):
        lifecycle.approve(db, session.id, OTHER_THERAPIST)
    with pytest.raises(errors.InvalidStateTransition):
        lifecycle.approve(db, session.id, THERAPIST)


def test_missing_session_not_found(lifecycle, db):
    with pytest.raises(errors.NotFoundError):
        lifecycle.cancel(db, 404, ADMIN)


@pytest.mark.parametrize("actor", [CLIENT, THERAPIST, ADMIN])
def test_cancel_changes_status_only(lifecycle, db, audit, actor):
    session = book(lifecycle, db)
    lifecycle.approve(db, session.id, THERAPIST)
    before = schemas.SessionResponse.model_validate(lifecycle.get_session(db, session.id))

    session = lifecycle.cancel(db, session.id, actor)

    after = schemas.SessionResponse.model_validate(session)
    assert after.status == Status.cancelled
    ignored = {"status", "updated_at"}
    assert after.model_dump(exclude=ignored) == before.model_dump(exclude=ignored)
    assert db.query(models.TherapySession).count() == 1
    assert audit.list_entries(action_type="SESSION_CANCEL")[0].previous_value == {"status": "Approved"}


def test_cancelled_session_frees_slot_for_new_booking(lifecycle, db):
    session = book(lifecycle, db)
    lifecycle.cancel(db, session.id, CLIENT)

    rebooked = book(lifecycle, db)
    assert rebooked.id != session.id

    with pytest.raises(errors.InvalidStateTransition):
        lifecycle.cancel(db, session.id, CLIENT)


# Actor holding the required relation for each event
PARTY_FOR_EVENT = {
    SessionEvent.approve: THERAPIST,
    SessionEvent.decline: THERAPIST,
    SessionEvent.submit_payment: CLIENT,
    SessionEvent.verify_payment: THERAPIST,
    SessionEvent.start_call: CLIENT,
    SessionEvent.end_call: CLIENT,
    SessionEvent.cancel: ADMIN,
}

ILLEGAL_MOVES = [
    (event, status)
    for event, transition in TRANSITIONS.items()
    for status in Status
    if status not in transition.sources
]


@pytest.mark.parametrize("event,status", ILLEGAL_MOVES)
def test_illegal_source_state_leaves_session_unchanged(event, status):
    session = models.TherapySession(
        booking_reference="SS-20250106-0001",
        client_id=CLIENT_ID,
        therapist_id=THERAPIST_ID,
        session_type=models.SessionType.individual,
        session_date=local(MONDAY, "10:00"),
        duration_minutes=60,
        status=status,
        payment_status=models.PaymentStatus.pending,
    )
    payload = {"proof": schemas.PaymentProof(transaction_code="X1")}

    with pytest.raises(errors.InvalidStateTransition) as exc_info:
        apply_transition(session, event, PARTY_FOR_EVENT[event], payload)

    assert exc_info.value.current_status == status
    assert session.status == status
    assert session.payment_status == models.PaymentStatus.pending
    assert session.payment_proof is None
    assert session.video_call_started is None


def test_terminal_states_accept_no_transitions():
    for status in (Status.declined, Status.completed, Status.cancelled):
        assert all(status not in t.sources for t in TRANSITIONS.values())


def test_notification_failure_does_not_fail_transition(audit, clock, db):
    lifecycle = SessionLifecycle(audit, FailingNotifier(), clock, guard=BookingGuard())
    session = book(lifecycle, db)

    session = lifecycle.approve(db, session.id, THERAPIST)
    assert session.status == Status.approved


def test_audit_failure_does_not_fail_transition(notifier, clock, db, tmp_path):
    # An audit store without its tables makes every append fail
    broken_engine = build_engine(f"sqlite:///{tmp_path / 'no_tables.db'}")
    broken_audit = AuditChain(sessionmaker(bind=broken_engine))
    lifecycle = SessionLifecycle(broken_audit, notifier, clock, guard=BookingGuard())

    session = book(lifecycle, db)
    session = lifecycle.approve(db, session.id, THERAPIST)

    assert session.status == Status.approved
    broken_engine.dispose()


def test_session_queries(lifecycle, db):
    first = book(lifecycle, db, "09:00")
    second = book(lifecycle, db, "11:00")
    lifecycle.cancel(db, second.id, CLIENT)

    found = lifecycle.find_by_booking_reference(db, f"  {first.booking_reference.lower()} ")
    assert found.id == first.id
    with pytest.raises(errors.NotFoundError):
        lifecycle.find_by_booking_reference(db, "SS-00000000-0000")

    assert [s.id for s in lifecycle.list_sessions(db, therapist_id=THERAPIST_ID)] == [first.id, second.id]
    assert [s.id for s in lifecycle.list_sessions(db, client_id=CLIENT_ID, statuses=["Cancelled"])] == [second.id]
    with pytest.raises(errors.ValidationError):
        lifecycle.list_sessions(db)
    with pytest.raises(errors.ValidationError):
        lifecycle.list_sessions(db, therapist_id=THERAPIST_ID, statuses=["Lost"])
