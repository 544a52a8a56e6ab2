"""
Helper functions for raising notifications from other apps.

Usage:
    from notifications.helpers import notify_shift
    notify_shift('ASSIGN', shift, user_id=employee.id, performed_by=manager.id)

`shift` carries its updated_at; together with the action and user it keys
the job, so calling a helper twice for the same change sends once.
"""
import logging

from .events import AnnouncementEvent, GenericEvent, ShiftEvent, TimeOffEvent
from .models import Channel
from .services import enqueue_notification

logger = logging.getLogger(__name__)


def notify_announcement(announcement_id, recipient_ids, title, message, performed_by=None, **kwargs):
    """Company announcement to every recipient, live and by email."""
    event = AnnouncementEvent.build(
        announcement_id, recipient_ids, title, message, performed_by=performed_by, **kwargs
    )
    return enqueue_notification(event)


def notify_shift(action, shift, user_id, performed_by=None, status=None, **kwargs):
    """
    Shift lifecycle notification. Urgent changes also go out by SMS.
    `action` is one of ASSIGN, STATUS_UPDATE, CHANGE, URGENT_SHIFT_CHANGED.
    """
    if action == 'URGENT_SHIFT_CHANGED':
        kwargs.setdefault('channels', (Channel.SOCKET, Channel.EMAIL, Channel.SMS))
    event = ShiftEvent.build(action, shift, user_id, performed_by=performed_by, status=status, **kwargs)
    return enqueue_notification(event)


def notify_time_off(action, request_id, user_id, start_date, end_date, occurred_at,
                    status=None, performed_by=None, **kwargs):
    """
    `action` is one of CREATE, UPDATE, DELETE, STATUS_CHANGE. `occurred_at` is
    when the request changed (its updated_at), not when the notice goes out.
    """
    event = TimeOffEvent.build(
        action, request_id, user_id, start_date, end_date,
        status=status, performed_by=performed_by, occurred_at=occurred_at, **kwargs
    )
    return enqueue_notification(event)


def notify_users(recipient_ids, title, message, record_type, record_id, context_id='',
                 channels=(Channel.SOCKET,), metadata=None):
    event = GenericEvent(
        recipient_ids=list(recipient_ids),
        title=title,
        message=message,
        record_type=record_type,
        record_id=str(record_id),
        context_id=context_id,
        metadata=metadata or {},
        channels=list(channels),
    )
    return enqueue_notification(event)
