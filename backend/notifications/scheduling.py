"""Daily exercise reminders, computed in each user's own timezone."""
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.utils import timezone

from programs.models import UserProgram, weekday_name
from .events import DailyExerciseEvent

logger = logging.getLogger(__name__)

UTC = ZoneInfo('UTC')


def user_zone(name):
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f'Unknown timezone {name!r}, falling back to UTC')
        return UTC


def in_window(local_dt, window=None):
    start_hour, end_hour = window or settings.DAILY_REMINDER_WINDOW
    return start_hour <= local_dt.hour < end_hour


def collect_daily_exercise_events(now=None):
    """
    One DailyExerciseEvent per in-progress program whose owner is currently
    inside the reminder window and has exercises scheduled for their local day.
    """
    now = now or timezone.now()
    events = []

    programs = (
        UserProgram.objects.filter(status=UserProgram.IN_PROGRESS)
        .select_related('user', 'program')
    )
    for user_program in programs.iterator():
        local_now = now.astimezone(user_zone(user_program.user.timezone))
        if not in_window(local_now):
            continue

        local_date = local_now.date()
        if not (user_program.start_date <= local_date <= user_program.end_date):
            continue

        day_name = weekday_name(local_date)
        exercises = list(
            user_program.program.exercises.filter(day_of_week=day_name).order_by('order', 'id')
        )
        if not exercises:
            continue

        events.append(DailyExerciseEvent.for_user_program(user_program, local_date, exercises))

    logger.debug(f'{len(events)} daily exercise reminder(s) due at {now.isoformat()}')
    return events
