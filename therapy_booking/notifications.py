# therapy_booking/notifications.py
import enum

import structlog

from . import schemas

logger = structlog.get_logger(__name__)


class NotificationEvent(str, enum.Enum):
    session_approved = "session_approved"
    session_declined = "session_declined"
    payment_confirmed = "payment_confirmed"


class NotificationDispatcher:
    """Delivery collaborator for lifecycle notifications.

    Implementations send email/SMS/etc. The lifecycle calls ``notify`` after
    the transition is committed and ignores any exception it raises.
    """

    def notify(self, event: NotificationEvent, session: schemas.SessionResponse) -> None:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Default dispatcher: records the notification in the application log only."""

    def notify(self, event: NotificationEvent, session: schemas.SessionResponse) -> None:
        logger.info(
            "notification_dispatched",
            notification=event.value,
            session_id=session.id,
            booking_reference=session.booking_reference,
            client_id=session.client_id,
            therapist_id=session.therapist_id,
        )
