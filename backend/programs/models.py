import uuid
from django.db import models
from django.conf import settings


class Program(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'programs'
        ordering = ['name']

    def __str__(self):
        return self.name


class ProgramExercise(models.Model):
    DAYS_OF_WEEK = [
        ('MONDAY', 'Monday'),
        ('TUESDAY', 'Tuesday'),
        ('WEDNESDAY', 'Wednesday'),
        ('THURSDAY', 'Thursday'),
        ('FRIDAY', 'Friday'),
        ('SATURDAY', 'Saturday'),
        ('SUNDAY', 'Sunday'),
    ]
    program = models.ForeignKey(Program, on_delete=models.CASCADE, related_name='exercises')
    title = models.CharField(max_length=200)
    day_of_week = models.CharField(max_length=10, choices=DAYS_OF_WEEK)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'program_exercises'
        ordering = ['day_of_week', 'order']

    def __str__(self):
        return f'{self.title} ({self.day_of_week})'


class UserProgram(models.Model):
    NOT_STARTED = 'not_started'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    STATUS_CHOICES = [
        (NOT_STARTED, 'Not started'),
        (IN_PROGRESS, 'In progress'),
        (COMPLETED, 'Completed'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='programs')
    program = models.ForeignKey(Program, on_delete=models.CASCADE, related_name='enrollments')
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default=NOT_STARTED)
    start_date = models.DateField()
    end_date = models.DateField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'user_programs'
        ordering = ['-start_date']
        indexes = [
            models.Index(fields=['status', 'start_date', 'end_date'], name='user_progra_status_7d2e8a_idx'),
        ]

    def __str__(self):
        return f'{self.user_id} on {self.program_id} ({self.status})'

    def day_number(self, local_date):
        return (local_date - self.start_date).days + 1


def weekday_name(local_date):
    """MONDAY..SUNDAY for a date, independent of the process locale."""
    return ProgramExercise.DAYS_OF_WEEK[local_date.weekday()][0]
