"""
Typed notification events.

Producers build one of the event classes below and hand it to
`services.enqueue_notification`. The event travels through Celery as a plain
dict (`to_payload`) and is rebuilt on the worker side with
`event_from_payload`.
"""
from dataclasses import dataclass, field, asdict
from typing import ClassVar
from zoneinfo import ZoneInfo

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from common.exceptions import ValidationError
from programs.models import weekday_name
from realtime import events as socket_events
from .models import NotificationType, Channel

MOUNTAIN = ZoneInfo('America/Denver')

ALL_CHANNELS = frozenset(Channel.values)

_registry = {}


def register(cls):
    _registry[cls.kind] = cls
    return cls


def format_instant(value):
    """Render a datetime as Mountain Time with the UTC instant alongside."""
    if isinstance(value, str):
        value = parse_datetime(value)
    if value is None:
        return ''
    if timezone.is_naive(value):
        value = timezone.make_aware(value, ZoneInfo('UTC'))
    utc = value.astimezone(ZoneInfo('UTC')).strftime('%Y-%m-%d %H:%M UTC')
    mountain = value.astimezone(MOUNTAIN).strftime('%Y-%m-%d %I:%M %p MT')
    return f'{mountain} ({utc})'


def _stamp(occurred_at):
    """Version part of a job key: when the record changed, never when it was sent."""
    if isinstance(occurred_at, str):
        occurred_at = parse_datetime(occurred_at)
    if occurred_at is None:
        raise ValidationError('occurred_at is required to key the notification.')
    if timezone.is_naive(occurred_at):
        occurred_at = timezone.make_aware(occurred_at, ZoneInfo('UTC'))
    return occurred_at.astimezone(ZoneInfo('UTC')).strftime('%Y%m%d%H%M%S')


@register
@dataclass
class NotificationEvent:
    kind: ClassVar[str] = 'generic'
    notification_type: ClassVar[str] = NotificationType.GENERIC

    recipient_ids: list
    title: str
    message: str
    record_type: str
    record_id: str
    context_id: str = ''
    metadata: dict = field(default_factory=dict)
    channels: list = field(default_factory=lambda: [Channel.SOCKET])
    html: str = ''
    socket_event: str = socket_events.NOTIFICATION

    @property
    def job_key(self):
        return f'{self.record_type}:{self.record_id}:{self.context_id}'

    @property
    def email_html(self):
        return self.html or f'<h3>{self.title}</h3><p>{self.message}</p>'

    def validate(self):
        if not self.recipient_ids:
            raise ValidationError('At least one recipient is required.')
        if not self.title:
            raise ValidationError('Notification title is required.')
        if not self.record_type or not str(self.record_id):
            raise ValidationError('Notification record type and id are required.')
        unknown = set(self.channels) - ALL_CHANNELS
        if unknown:
            raise ValidationError(f'Unknown channels: {", ".join(sorted(unknown))}')
        return self

    def to_payload(self):
        data = asdict(self)
        data['kind'] = self.kind
        data['record_id'] = str(self.record_id)
        data['recipient_ids'] = [int(pk) for pk in self.recipient_ids]
        data['channels'] = [str(c) for c in self.channels]
        return data


def event_from_payload(payload):
    data = dict(payload)
    kind = data.pop('kind', NotificationEvent.kind)
    cls = _registry.get(kind)
    if cls is None:
        raise ValidationError(f'Unknown notification kind: {kind}')
    try:
        return cls(**data)
    except TypeError as exc:
        raise ValidationError(f'Malformed notification payload: {exc}')


@register
@dataclass
class GenericEvent(NotificationEvent):
    kind: ClassVar[str] = 'generic'


@register
@dataclass
class AnnouncementEvent(NotificationEvent):
    kind: ClassVar[str] = 'announcement'
    notification_type: ClassVar[str] = NotificationType.ANNOUNCEMENT

    @classmethod
    def build(cls, announcement_id, recipient_ids, title, message, performed_by=None,
              published_at=None, channels=(Channel.SOCKET, Channel.EMAIL)):
        published_at = published_at or timezone.now()
        return cls(
            recipient_ids=list(recipient_ids),
            title=title,
            message=message,
            record_type='announcement',
            record_id=str(announcement_id),
            context_id='publish',
            metadata={
                'announcement_id': str(announcement_id),
                'performed_by': performed_by,
                'published_at': published_at.isoformat(),
            },
            channels=list(channels),
            socket_event='company-announcement.create',
        )


SHIFT_TITLES = {
    'ASSIGN': 'New Shift Assigned',
    'STATUS_UPDATE': 'Your Shift Status Updated',
    'CHANGE': 'Shift Details Updated',
    'URGENT_SHIFT_CHANGED': 'Urgent Shift Changed',
}

SHIFT_EVENT_NAMES = {
    'ASSIGN': 'shift.assign',
    'CHANGE': 'shift.change',
    'STATUS_UPDATE': 'shift.status.update',
    'URGENT_SHIFT_CHANGED': 'urgent.shift.changed',
}


@register
@dataclass
class ShiftEvent(NotificationEvent):
    kind: ClassVar[str] = 'shift'
    notification_type: ClassVar[str] = NotificationType.SHIFT

    @classmethod
    def build(cls, action, shift, user_id, performed_by=None, status=None,
              occurred_at=None, channels=(Channel.SOCKET, Channel.EMAIL)):
        """
        `shift` is a mapping with at least id, title, start_time and end_time;
        job, location and note are rendered when present. `occurred_at`
        (default: shift["updated_at"]) versions the job key, so re-emitting the
        same change is deduplicated. Urgent changes build an UrgentShiftEvent.
        """
        if action not in SHIFT_TITLES:
            raise ValidationError(f'Unknown shift action: {action}')

        rows = [
            f'<li><strong>Shift:</strong> {shift["title"]}</li>',
            f'<li><strong>Start:</strong> {format_instant(shift["start_time"])}</li>',
            f'<li><strong>End:</strong> {format_instant(shift["end_time"])}</li>',
        ]
        for key in ('job', 'location', 'note'):
            if shift.get(key):
                rows.append(f'<li><strong>{key.title()}:</strong> {shift[key]}</li>')
        details = '<ul>' + ''.join(rows) + '</ul>'

        if action == 'ASSIGN':
            intro = '<p>You have been assigned a new shift.</p>'
        elif action == 'STATUS_UPDATE':
            intro = (f'<p>Your shift status has been updated to: '
                     f'<strong>{status or shift.get("status", "")}</strong>.</p>')
        elif action == 'CHANGE':
            intro = '<p>Your shift has been updated with new details.</p>'
        else:
            intro = '<p><strong>Urgent:</strong> Your shift has been changed!</p>'

        event_cls = UrgentShiftEvent if action == 'URGENT_SHIFT_CHANGED' else cls
        return event_cls(
            recipient_ids=[user_id],
            title=SHIFT_TITLES[action],
            message=f'Shift notification for {shift["title"]} on {format_instant(shift["start_time"])}',
            record_type='shift',
            record_id=str(shift['id']),
            context_id=f'{action.lower()}:{user_id}:{_stamp(occurred_at or shift.get("updated_at"))}',
            metadata={
                'action': action,
                'shift_id': str(shift['id']),
                'performed_by': performed_by,
                'status': status,
            },
            channels=list(channels),
            html=intro + details,
            socket_event=SHIFT_EVENT_NAMES[action],
        )


@register
@dataclass
class UrgentShiftEvent(ShiftEvent):
    kind: ClassVar[str] = 'urgent_shift_changed'
    notification_type: ClassVar[str] = NotificationType.URGENT_SHIFT_CHANGED


TIME_OFF_TITLES = {
    'CREATE': 'Time Off Request Created',
    'UPDATE': 'Time Off Request Updated',
    'DELETE': 'Time Off Request Deleted',
    'STATUS_CHANGE': 'Time Off Request Status Changed',
}

TIME_OFF_EVENT_NAMES = {
    'CREATE': 'timeoff.create',
    'UPDATE': 'timeoff.update',
    'DELETE': 'timeoff.delete',
    'STATUS_CHANGE': 'timeoff.status.change',
}


@register
@dataclass
class TimeOffEvent(NotificationEvent):
    kind: ClassVar[str] = 'time_off'
    notification_type: ClassVar[str] = NotificationType.TIME_OFF

    @classmethod
    def build(cls, action, request_id, user_id, start_date, end_date, status=None,
              performed_by=None, occurred_at=None, channels=(Channel.SOCKET, Channel.EMAIL)):
        if action not in TIME_OFF_TITLES:
            raise ValidationError(f'Unknown time off action: {action}')

        start, end = format_instant(start_date), format_instant(end_date)
        if action == 'UPDATE':
            body = (f'<p>Your time off request has been updated.</p>'
                    f'<p><strong>New From:</strong> {start}</p><p><strong>New To:</strong> {end}</p>')
        else:
            if action == 'CREATE':
                intro = '<p>Your time off request has been created.</p>'
            elif action == 'DELETE':
                intro = '<p>Your time off request has been deleted.</p>'
            else:
                intro = (f'<p>The status of your time off request has changed to: '
                         f'<strong>{status}</strong>.</p>')
            body = f'{intro}<p><strong>From:</strong> {start}</p><p><strong>To:</strong> {end}</p>'

        return cls(
            recipient_ids=[user_id],
            title=TIME_OFF_TITLES[action],
            message=f'Time off request from {start} to {end}',
            record_type='time_off',
            record_id=str(request_id),
            context_id=f'{action.lower()}:{user_id}:{_stamp(occurred_at)}',
            metadata={
                'action': action,
                'request_id': str(request_id),
                'performed_by': performed_by,
                'status': status,
            },
            channels=list(channels),
            html=body,
            socket_event=TIME_OFF_EVENT_NAMES[action],
        )


@register
@dataclass
class DailyExerciseEvent(NotificationEvent):
    kind: ClassVar[str] = 'daily_exercise'
    notification_type: ClassVar[str] = NotificationType.DAILY_EXERCISE

    @classmethod
    def for_user_program(cls, user_program, local_date, exercises):
        day_number = user_program.day_number(local_date)
        day_name = weekday_name(local_date)
        return cls(
            recipient_ids=[user_program.user_id],
            title=f'{user_program.program.name} - Day {day_number}',
            message=f'{len(exercises)} exercise(s) for {day_name}',
            record_type='user_program',
            record_id=str(user_program.pk),
            context_id=local_date.isoformat(),
            metadata={
                'program_id': str(user_program.program_id),
                'user_program_id': str(user_program.pk),
                'day_number': day_number,
                'day_of_week': day_name,
                'exercises': [
                    {'id': exercise.pk, 'title': exercise.title, 'order': exercise.order}
                    for exercise in exercises
                ],
            },
            channels=[Channel.SOCKET],
        )
