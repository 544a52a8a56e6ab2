"""
Notification fan-out.

`enqueue_notification` is the only entry point producers use. It turns a
typed event into a Celery job keyed by the event's job key; the worker calls
`NotificationEngine.process`, which persists exactly one Notification per key
and then delivers to each enabled channel independently.
"""
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import transaction
from django.utils import timezone
from django.utils.html import strip_tags

from common.exceptions import NotFound, UpstreamChannelFailure, translate_errors
from realtime.push import ChannelLayerPusher
from .channels import EmailSender, TwilioSmsSender
from .events import event_from_payload
from .models import Channel, DeadLetterJob, Notification, NotificationRecipient

logger = logging.getLogger(__name__)

User = get_user_model()


def _claim_key(job_key):
    return f'notification-job:{job_key}'


def enqueue_notification(event):
    """
    Queue `event` for delivery. Returns the AsyncResult, or None when the same
    logical event was already persisted or is already in flight.
    """
    event.validate()
    job_key = event.job_key

    if Notification.objects.filter(job_key=job_key, dispatched_at__isnull=False).exists():
        logger.info(f'Notification {job_key} already delivered, skipping')
        return None
    if not cache.add(_claim_key(job_key), 1, settings.NOTIFICATION_JOB_DEDUP_TTL):
        logger.info(f'Notification {job_key} already queued, skipping')
        return None

    from .tasks import process_notification
    return process_notification.apply_async(args=[event.to_payload()], task_id=job_key)


def record_dead_letter(task_name, payload, exc, attempts):
    job = DeadLetterJob.objects.create(
        job_key=f'{payload.get("record_type")}:{payload.get("record_id")}:{payload.get("context_id", "")}',
        task_name=task_name,
        payload=payload,
        error=f'{type(exc).__name__}: {exc}',
        attempts=attempts,
    )
    logger.error(f'Notification job {job.job_key} moved to dead letters after {attempts} attempts: {exc}')
    return job


def requeue_dead_letter(job_id):
    """Push a dead job back on the queue, bypassing the in-flight claim."""
    try:
        job = DeadLetterJob.objects.get(id=job_id)
    except DeadLetterJob.DoesNotExist:
        raise NotFound('Dead letter job not found.')

    cache.set(_claim_key(job.job_key), 1, settings.NOTIFICATION_JOB_DEDUP_TTL)

    from .tasks import process_notification
    result = process_notification.apply_async(args=[job.payload], task_id=f'{job.job_key}:requeue:{job.pk}')

    job.requeued_at = timezone.now()
    job.save(update_fields=['requeued_at'])
    logger.info(f'Requeued dead notification job {job.job_key}')
    return result


class NotificationEngine:

    def __init__(self, pusher=None, email_sender=None, sms_sender=None):
        self.pusher = pusher or ChannelLayerPusher()
        self.email_sender = email_sender or EmailSender()
        self.sms_sender = sms_sender or TwilioSmsSender()

    @translate_errors('Notification processing failed')
    def process(self, payload):
        """
        Handle one queued job. Database failures propagate so Celery retries
        the whole job; channel failures are logged and swallowed per recipient.
        A retry after a failure that hit between persisting and finishing the
        channels delivers again; once `dispatched_at` is set the job is done.
        Returns the Notification, or None when the job key was already handled.
        """
        event = event_from_payload(payload).validate()
        notification, created = self.persist(event)
        if notification.dispatched_at is not None:
            logger.info(f'Notification {event.job_key} already dispatched, skipping delivery')
            return None
        if not created:
            logger.info(f'Notification {event.job_key} persisted by an earlier attempt, delivering now')

        recipients = list(
            User.objects.filter(id__in=event.recipient_ids, is_active=True)
            .only('id', 'email', 'phone_number')
        )
        for channel in event.channels:
            if channel == Channel.SOCKET:
                self._deliver_socket(event, notification, recipients)
            elif channel == Channel.EMAIL:
                self._deliver_email(event, recipients)
            elif channel == Channel.SMS:
                self._deliver_sms(event, recipients)

        notification.dispatched_at = timezone.now()
        Notification.objects.filter(id=notification.id).update(dispatched_at=notification.dispatched_at)
        logger.info(
            f'Notification {event.job_key} delivered to {len(recipients)} recipient(s) '
            f'via {", ".join(str(c) for c in event.channels)}'
        )
        return notification

    def persist(self, event):
        with transaction.atomic():
            notification, created = Notification.objects.get_or_create(
                job_key=event.job_key,
                defaults={
                    'notification_type': event.notification_type,
                    'title': event.title,
                    'message': event.message,
                    'metadata': event.metadata,
                    'record_type': event.record_type,
                    'record_id': str(event.record_id),
                },
            )
            if created:
                user_ids = User.objects.filter(id__in=event.recipient_ids).values_list('id', flat=True)
                NotificationRecipient.objects.bulk_create([
                    NotificationRecipient(notification=notification, user_id=uid) for uid in user_ids
                ])
        return notification, created

    # ── CHANNELS ──

    def _deliver_socket(self, event, notification, recipients):
        payload = {
            'id': notification.id,
            'type': event.notification_type,
            'title': event.title,
            'message': event.message,
            'metadata': event.metadata,
            'created_at': notification.created_at,
        }
        for user in recipients:
            try:
                self.pusher.push(user.id, event.socket_event, payload)
            except Exception:
                logger.exception(f'Socket push of {event.job_key} to user {user.id} failed')

    def _deliver_email(self, event, recipients):
        for user in recipients:
            if not user.email:
                continue
            try:
                self.email_sender.send(user.email, event.title, event.email_html)
            except UpstreamChannelFailure as exc:
                logger.warning(f'{exc.message} ({event.job_key})')

    def _deliver_sms(self, event, recipients):
        body = f'{event.title}: {strip_tags(event.message)}'
        for user in recipients:
            if not user.phone_number:
                logger.debug(f'User {user.id} has no phone number, skipping SMS')
                continue
            try:
                self.sms_sender.send(user.phone_number, body)
            except UpstreamChannelFailure as exc:
                logger.warning(f'{exc.message} ({event.job_key})')
