import logging
from celery import shared_task
from django.conf import settings
from django.utils import timezone
from datetime import timedelta

from common.exceptions import ValidationError

logger = logging.getLogger(__name__)


@shared_task(
    name='notifications.process_notification',
    bind=True,
    max_retries=settings.NOTIFICATION_MAX_RETRIES,
)
def process_notification(self, payload):
    """
    Persist and fan out one notification event.
    Whole-job failures retry with exponential backoff; once retries are
    exhausted the job is written to the dead letter table and re-raised.
    """
    from .services import NotificationEngine, record_dead_letter

    try:
        notification = NotificationEngine().process(payload)
    except ValidationError as exc:
        # A malformed payload will not get better on retry
        record_dead_letter(self.name, payload, exc, self.request.retries + 1)
        raise
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            record_dead_letter(self.name, payload, exc, self.request.retries + 1)
            raise
        retry_delay = settings.NOTIFICATION_RETRY_BASE_DELAY * (2 ** self.request.retries)
        logger.warning(f'Notification job failed ({exc}), retrying in {retry_delay}s')
        raise self.retry(exc=exc, countdown=retry_delay)

    return str(notification.id) if notification else None


@shared_task(name='notifications.enqueue_daily_exercise_reminders')
def enqueue_daily_exercise_reminders():
    """
    Run hourly via Celery Beat. Each firing only picks users whose local time
    is inside the reminder window; the per-day job key absorbs overlaps.
    """
    from .scheduling import collect_daily_exercise_events
    from .services import enqueue_notification

    queued = 0
    for event in collect_daily_exercise_events():
        if enqueue_notification(event) is not None:
            queued += 1
    if queued:
        logger.info(f'Queued {queued} daily exercise reminders')
    return queued


@shared_task(name='notifications.cleanup_old_notifications')
def cleanup_old_notifications(days=90):
    """
    Remove notifications older than N days that every recipient has read.
    Run daily via Celery Beat.
    """
    from .models import Notification

    cutoff = timezone.now() - timedelta(days=days)
    deleted_count, _ = Notification.objects.filter(
        created_at__lt=cutoff,
    ).exclude(
        deliveries__is_read=False,
    ).delete()
    if deleted_count:
        logger.info(f'Cleaned up {deleted_count} old read notifications')
    return deleted_count
