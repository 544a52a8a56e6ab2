import uuid
from django.db import models
from django.conf import settings
from django.utils import timezone


class NotificationType(models.TextChoices):
    ANNOUNCEMENT = 'announcement', 'Company Announcement'
    SHIFT = 'shift', 'Shift'
    URGENT_SHIFT_CHANGED = 'urgent_shift_changed', 'Urgent Shift Changed'
    TIME_OFF = 'time_off', 'Time Off'
    DAILY_EXERCISE = 'daily_exercise', 'Daily Exercise'
    GENERIC = 'generic', 'Generic'


class Channel(models.TextChoices):
    SOCKET = 'socket', 'Live socket'
    EMAIL = 'email', 'Email'
    SMS = 'sms', 'SMS'


class Notification(models.Model):
    """
    One row per logical event. `job_key` is the deterministic queue key
    (record type, record id, context); it is unique so a re-delivered job can
    never persist the same event twice.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    notification_type = models.CharField(max_length=24, choices=NotificationType.choices)
    title = models.CharField(max_length=255)
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)

    record_type = models.CharField(max_length=50, help_text='e.g. shift, time_off, user_program')
    record_id = models.CharField(max_length=64)
    job_key = models.CharField(max_length=255, unique=True)
    # Set once every channel has been attempted; a retried job only delivers while it is empty
    dispatched_at = models.DateTimeField(null=True, blank=True)

    recipients = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        through='NotificationRecipient',
        related_name='notifications',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notifications'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['record_type', 'record_id'], name='notificatio_record__3b9f0a_idx'),
            models.Index(fields=['notification_type'], name='notificatio_notific_6e1d4c_idx'),
        ]

    def __str__(self):
        return f'[{self.notification_type}] {self.title[:50]}'


class NotificationRecipient(models.Model):
    notification = models.ForeignKey(Notification, on_delete=models.CASCADE, related_name='deliveries')
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notification_deliveries'
    )
    is_read = models.BooleanField(default=False)
    read_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'notification_recipients'
        unique_together = ['notification', 'user']
        indexes = [
            models.Index(fields=['user', 'is_read'], name='notificatio_user_id_a2c7e5_idx'),
        ]

    def __str__(self):
        return f'{self.notification_id} -> {self.user_id} ({"read" if self.is_read else "unread"})'

    def mark_as_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = timezone.now()
            self.save(update_fields=['is_read', 'read_at'])


class DeadLetterJob(models.Model):
    """Notification jobs that exhausted their retries, kept for manual inspection."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    job_key = models.CharField(max_length=255, db_index=True)
    task_name = models.CharField(max_length=200)
    payload = models.JSONField(default=dict)
    error = models.TextField(blank=True, default='')
    attempts = models.PositiveIntegerField(default=0)
    requeued_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notification_dead_letters'
        ordering = ['-created_at']

    def __str__(self):
        return f'{self.task_name} {self.job_key} ({self.attempts} attempts)'
