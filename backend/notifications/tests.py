from datetime import date, datetime, timedelta
from unittest.mock import patch, MagicMock
from zoneinfo import ZoneInfo

from django.core import mail
from django.core.cache import cache
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status as http_status
from rest_framework.test import APIClient

from common.exceptions import TransientPersistenceFailure, UpstreamChannelFailure, ValidationError
from common.testing import RecordingPusher, make_user
from programs.models import Program, ProgramExercise, UserProgram
from .channels import EmailSender, TwilioSmsSender
from .helpers import notify_shift
from .events import (
    AnnouncementEvent, DailyExerciseEvent, GenericEvent, ShiftEvent, TimeOffEvent, UrgentShiftEvent,
    event_from_payload, format_instant,
)
from .models import Channel, DeadLetterJob, Notification, NotificationRecipient, NotificationType
from .scheduling import collect_daily_exercise_events
from .services import NotificationEngine, enqueue_notification, requeue_dead_letter
from .tasks import enqueue_daily_exercise_reminders, process_notification

SHIFT = {
    'id': 'shift-1',
    'title': 'Morning floor',
    'start_time': datetime(2025, 3, 10, 15, 0, tzinfo=ZoneInfo('UTC')),
    'end_time': datetime(2025, 3, 10, 23, 0, tzinfo=ZoneInfo('UTC')),
    'location': 'Denver gym',
    'updated_at': datetime(2025, 3, 1, 12, 0, tzinfo=ZoneInfo('UTC')),
}


def generic_event(recipients, channels=(Channel.SOCKET,), **kwargs):
    defaults = dict(
        recipient_ids=[u.id for u in recipients],
        title='Heads up',
        message='Gym closes early today',
        record_type='announcement',
        record_id='a-1',
        context_id='publish',
        channels=list(channels),
    )
    defaults.update(kwargs)
    return GenericEvent(**defaults)


class EventTests(TestCase):

    def test_job_key(self):
        event = generic_event([])
        self.assertEqual(event.job_key, 'announcement:a-1:publish')

    def test_payload_round_trip_keeps_kind(self):
        user = make_user()
        event = ShiftEvent.build('ASSIGN', SHIFT, user.id, occurred_at=datetime(2025, 3, 1, tzinfo=ZoneInfo('UTC')))
        restored = event_from_payload(event.to_payload())
        self.assertIsInstance(restored, ShiftEvent)
        self.assertEqual(restored.job_key, event.job_key)

    def test_validation(self):
        with self.assertRaises(ValidationError):
            generic_event([]).validate()
        user = make_user()
        with self.assertRaises(ValidationError):
            generic_event([user], channels=['pigeon']).validate()

    def test_unknown_kind(self):
        with self.assertRaises(ValidationError):
            event_from_payload({'kind': 'telegram'})

    def test_shift_titles_and_times(self):
        event = ShiftEvent.build('URGENT_SHIFT_CHANGED', SHIFT, 1)
        self.assertEqual(event.title, 'Urgent Shift Changed')
        self.assertEqual(event.socket_event, 'urgent.shift.changed')
        self.assertIn('2025-03-10 09:00 AM MT (2025-03-10 15:00 UTC)', event.html)
        self.assertIn('Denver gym', event.html)

    def test_unknown_shift_action(self):
        with self.assertRaises(ValidationError):
            ShiftEvent.build('EXPLODE', SHIFT, 1)

    def test_time_off_titles(self):
        event = TimeOffEvent.build(
            'STATUS_CHANGE', 'req-1', 1, SHIFT['start_time'], SHIFT['end_time'],
            status='APPROVED', occurred_at=SHIFT['updated_at'],
        )
        self.assertEqual(event.title, 'Time Off Request Status Changed')
        self.assertIn('APPROVED', event.html)
        self.assertEqual(event.record_type, 'time_off')

    def test_same_change_keeps_its_job_key(self):
        send_times = [
            datetime(2026, 1, 1, 8, 0, 0, tzinfo=ZoneInfo('UTC')),
            datetime(2026, 1, 1, 8, 0, 2, tzinfo=ZoneInfo('UTC')),
        ]
        with patch('notifications.events.timezone.now', side_effect=send_times):
            first = ShiftEvent.build('ASSIGN', SHIFT, 7)
            second = ShiftEvent.build('ASSIGN', SHIFT, 7)
        self.assertEqual(first.job_key, second.job_key)
        self.assertEqual(first.job_key, 'shift:shift-1:assign:7:20250301120000')

        request = dict(start_date=SHIFT['start_time'], end_date=SHIFT['end_time'], occurred_at='2025-03-02T09:15:00Z')
        self.assertEqual(
            TimeOffEvent.build('CREATE', 'req-1', 7, **request).job_key,
            TimeOffEvent.build('CREATE', 'req-1', 7, **request).job_key,
        )

    def test_new_version_of_the_record_gets_a_new_key(self):
        edited = dict(SHIFT, updated_at=datetime(2025, 3, 2, 12, 0, tzinfo=ZoneInfo('UTC')))
        self.assertNotEqual(
            ShiftEvent.build('CHANGE', SHIFT, 7).job_key,
            ShiftEvent.build('CHANGE', edited, 7).job_key,
        )

    def test_unversioned_events_are_rejected(self):
        unversioned = {k: v for k, v in SHIFT.items() if k != 'updated_at'}
        with self.assertRaises(ValidationError):
            ShiftEvent.build('ASSIGN', unversioned, 7)
        with self.assertRaises(ValidationError):
            TimeOffEvent.build('CREATE', 'req-1', 7, SHIFT['start_time'], SHIFT['end_time'])

    def test_urgent_change_has_its_own_type(self):
        event = ShiftEvent.build('URGENT_SHIFT_CHANGED', SHIFT, 7)
        self.assertIsInstance(event, UrgentShiftEvent)
        self.assertEqual(event.notification_type, NotificationType.URGENT_SHIFT_CHANGED)
        restored = event_from_payload(event.to_payload())
        self.assertEqual(restored.notification_type, NotificationType.URGENT_SHIFT_CHANGED)
        self.assertEqual(ShiftEvent.build('CHANGE', SHIFT, 7).notification_type, NotificationType.SHIFT)

    def test_format_instant_accepts_iso_strings(self):
        self.assertEqual(format_instant('2025-07-01T18:30:00Z'), '2025-07-01 12:30 PM MT (2025-07-01 18:30 UTC)')

    def test_announcement_defaults_to_socket_and_email(self):
        event = AnnouncementEvent.build('a-9', [1, 2], 'Title', 'Body')
        self.assertEqual(set(event.channels), {Channel.SOCKET, Channel.EMAIL})
        self.assertEqual(event.job_key, 'announcement:a-9:publish')


class NotificationEngineTests(TestCase):

    def setUp(self):
        self.pusher = RecordingPusher()
        self.email = MagicMock(spec=EmailSender)
        self.sms = MagicMock(spec=TwilioSmsSender)
        self.engine = NotificationEngine(pusher=self.pusher, email_sender=self.email, sms_sender=self.sms)
        self.user = make_user(phone_number='+15550001111')

    def test_offline_socket_does_not_block_email(self):
        event = generic_event([self.user], channels=[Channel.EMAIL, Channel.SOCKET])
        notification = self.engine.process(event.to_payload())

        self.email.send.assert_called_once()
        self.assertEqual(self.email.send.call_args[0][0], self.user.email)
        self.assertEqual(self.pusher.pushed, [])

        self.assertEqual(Notification.objects.count(), 1)
        delivery = NotificationRecipient.objects.get(notification=notification)
        self.assertEqual(delivery.user_id, self.user.id)
        self.assertFalse(delivery.is_read)

    def test_reprocessing_same_job_key_creates_nothing(self):
        payload = generic_event([self.user], channels=[Channel.EMAIL]).to_payload()
        self.engine.process(payload)
        self.assertIsNone(self.engine.process(payload))
        self.assertEqual(Notification.objects.count(), 1)
        self.assertEqual(NotificationRecipient.objects.count(), 1)
        self.email.send.assert_called_once()

    def test_online_socket_push(self):
        self.pusher.go_online(self.user.id)
        event = ShiftEvent.build('ASSIGN', SHIFT, self.user.id, channels=[Channel.SOCKET])
        self.engine.process(event.to_payload())
        [pushed] = self.pusher.events_for(self.user.id, 'shift.assign')
        self.assertEqual(pushed['title'], 'New Shift Assigned')
        self.assertEqual(pushed['type'], NotificationType.SHIFT)

    def test_sms_failure_does_not_stop_other_channels(self):
        self.sms.send.side_effect = UpstreamChannelFailure('Twilio down')
        self.pusher.go_online(self.user.id)
        event = generic_event([self.user], channels=[Channel.SMS, Channel.EMAIL, Channel.SOCKET])

        notification = self.engine.process(event.to_payload())

        self.assertIsNotNone(notification)
        self.sms.send.assert_called_once_with('+15550001111', 'Heads up: Gym closes early today')
        self.email.send.assert_called_once()
        self.assertEqual(len(self.pusher.events_for(self.user.id)), 1)

    def test_email_failure_for_one_recipient_continues(self):
        other = make_user()
        self.email.send.side_effect = [UpstreamChannelFailure('bounced'), None]
        self.engine.process(generic_event([self.user, other], channels=[Channel.EMAIL]).to_payload())
        self.assertEqual(self.email.send.call_count, 2)

    def test_sms_skips_users_without_phone(self):
        other = make_user()
        self.engine.process(generic_event([other], channels=[Channel.SMS]).to_payload())
        self.sms.send.assert_not_called()

    def test_failure_after_persist_is_delivered_on_retry(self):
        payload = generic_event([self.user], channels=[Channel.EMAIL]).to_payload()
        with patch.object(NotificationEngine, '_deliver_email', side_effect=DatabaseError('connection lost')):
            with self.assertRaises(TransientPersistenceFailure):
                self.engine.process(payload)
        self.assertIsNone(Notification.objects.get().dispatched_at)
        self.email.send.assert_not_called()

        notification = self.engine.process(payload)

        self.assertIsNotNone(notification)
        self.email.send.assert_called_once()
        self.assertEqual(Notification.objects.count(), 1)
        self.assertEqual(NotificationRecipient.objects.count(), 1)
        self.assertIsNotNone(Notification.objects.get().dispatched_at)

    def test_database_failure_propagates(self):
        payload = generic_event([self.user]).to_payload()
        with patch.object(Notification.objects, 'get_or_create', side_effect=DatabaseError('db gone')):
            with self.assertRaises(TransientPersistenceFailure):
                self.engine.process(payload)
        self.assertEqual(Notification.objects.count(), 0)


class EnqueueTests(TestCase):

    def setUp(self):
        cache.clear()
        self.user = make_user()

    @patch('notifications.tasks.process_notification.apply_async')
    def test_job_key_is_task_id(self, apply_async):
        event = generic_event([self.user])
        enqueue_notification(event)
        apply_async.assert_called_once()
        self.assertEqual(apply_async.call_args.kwargs['task_id'], event.job_key)

    @patch('notifications.tasks.process_notification.apply_async')
    def test_reemitting_same_event_is_deduplicated(self, apply_async):
        enqueue_notification(generic_event([self.user]))
        self.assertIsNone(enqueue_notification(generic_event([self.user])))
        apply_async.assert_called_once()

    @patch('notifications.tasks.process_notification.apply_async')
    def test_already_dispatched_is_skipped(self, apply_async):
        event = generic_event([self.user])
        Notification.objects.create(
            notification_type=NotificationType.GENERIC, title='t', message='m',
            record_type='announcement', record_id='a-1', job_key=event.job_key,
            dispatched_at=timezone.now(),
        )
        self.assertIsNone(enqueue_notification(event))
        apply_async.assert_not_called()

    @patch('notifications.tasks.process_notification.apply_async')
    def test_persisted_but_undelivered_is_queued_again(self, apply_async):
        event = generic_event([self.user])
        Notification.objects.create(
            notification_type=NotificationType.GENERIC, title='t', message='m',
            record_type='announcement', record_id='a-1', job_key=event.job_key,
        )
        enqueue_notification(event)
        apply_async.assert_called_once()

    def test_invalid_event_rejected_before_queueing(self):
        with self.assertRaises(ValidationError):
            enqueue_notification(generic_event([]))

    def test_urgent_shift_change_is_stored_as_urgent(self):
        notify_shift('URGENT_SHIFT_CHANGED', SHIFT, self.user.id)
        notification = Notification.objects.get()
        self.assertEqual(notification.notification_type, NotificationType.URGENT_SHIFT_CHANGED)
        self.assertEqual(notification.metadata['action'], 'URGENT_SHIFT_CHANGED')
        self.assertEqual(len(mail.outbox), 1)

    def test_eager_end_to_end(self):
        enqueue_notification(generic_event([self.user], channels=[Channel.EMAIL]))
        self.assertEqual(Notification.objects.count(), 1)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, 'Heads up')
        self.assertEqual(mail.outbox[0].to, [self.user.email])


@override_settings(NOTIFICATION_RETRY_BASE_DELAY=0)
class RetryAndDeadLetterTests(TestCase):

    def setUp(self):
        cache.clear()
        self.user = make_user()

    def test_exhausted_retries_land_in_dead_letters(self):
        payload = generic_event([self.user]).to_payload()
        with patch('notifications.services.NotificationEngine.process', side_effect=DatabaseError('db gone')) as process:
            result = process_notification.apply(args=[payload])

        self.assertTrue(result.failed())
        self.assertEqual(process.call_count, process_notification.max_retries + 1)
        job = DeadLetterJob.objects.get()
        self.assertEqual(job.job_key, 'announcement:a-1:publish')
        self.assertEqual(job.attempts, process_notification.max_retries + 1)
        self.assertIn('db gone', job.error)
        self.assertEqual(job.payload, payload)

    def test_transient_failure_then_success(self):
        payload = generic_event([self.user]).to_payload()
        real_process = NotificationEngine.process
        calls = []

        def flaky(engine, data):
            calls.append(1)
            if len(calls) == 1:
                raise DatabaseError('blip')
            return real_process(engine, data)

        with patch('notifications.services.NotificationEngine.process', autospec=True, side_effect=flaky):
            result = process_notification.apply(args=[payload])

        self.assertTrue(result.successful())
        self.assertEqual(len(calls), 2)
        self.assertEqual(Notification.objects.count(), 1)
        self.assertFalse(DeadLetterJob.objects.exists())

    def test_transient_failure_after_persist_still_sends_email(self):
        payload = generic_event([self.user], channels=[Channel.SOCKET, Channel.EMAIL]).to_payload()
        with patch(
            'notifications.services.NotificationEngine._deliver_socket',
            side_effect=[DatabaseError('connection lost'), None],
        ):
            result = process_notification.apply(args=[payload])

        self.assertTrue(result.successful())
        self.assertEqual(Notification.objects.count(), 1)
        self.assertEqual(len(mail.outbox), 1)
        self.assertFalse(DeadLetterJob.objects.exists())

    def test_malformed_payload_goes_straight_to_dead_letters(self):
        result = process_notification.apply(args=[{'kind': 'generic', 'bogus': True}])
        self.assertTrue(result.failed())
        self.assertEqual(DeadLetterJob.objects.get().attempts, 1)

    def test_requeue_dead_letter(self):
        payload = generic_event([self.user]).to_payload()
        job = DeadLetterJob.objects.create(
            job_key='announcement:a-1:publish', task_name='notifications.process_notification',
            payload=payload, error='DatabaseError: db gone', attempts=4,
        )
        requeue_dead_letter(job.id)
        job.refresh_from_db()
        self.assertIsNotNone(job.requeued_at)
        self.assertEqual(Notification.objects.filter(job_key='announcement:a-1:publish').count(), 1)


class TwilioSmsSenderTests(TestCase):

    def test_unconfigured_raises_upstream_failure(self):
        with self.assertRaises(UpstreamChannelFailure):
            TwilioSmsSender(account_sid='', auth_token='', from_number='').send('+15550001111', 'hi')

    def test_sends_through_client(self):
        sender = TwilioSmsSender(account_sid='AC123', auth_token='secret', from_number='+15550009999')
        client = MagicMock()
        client.messages.create.return_value.sid = 'SM1'
        sender._client = client

        self.assertEqual(sender.send('+15550001111', 'hi'), 'SM1')
        client.messages.create.assert_called_once_with(to='+15550001111', from_='+15550009999', body='hi')


@override_settings(DAILY_REMINDER_WINDOW=(7, 9))
class DailyExerciseSchedulingTests(TestCase):

    def setUp(self):
        cache.clear()
        self.program = Program.objects.create(name='Strength Base')
        # 2025-03-10 is a Monday
        ProgramExercise.objects.create(program=self.program, title='Squat', day_of_week='MONDAY', order=1)
        ProgramExercise.objects.create(program=self.program, title='Row', day_of_week='MONDAY', order=2)
        ProgramExercise.objects.create(program=self.program, title='Run', day_of_week='TUESDAY', order=1)

    def enroll(self, tz, status=UserProgram.IN_PROGRESS, start=date(2025, 3, 1)):
        user = make_user(timezone=tz)
        return UserProgram.objects.create(
            user=user, program=self.program, status=status,
            start_date=start, end_date=start + timedelta(days=60),
        )

    def test_only_users_inside_local_window(self):
        denver = self.enroll('America/Denver')
        self.enroll('Asia/Tokyo')
        # 14:30 UTC is 08:30 in Denver and 23:30 in Tokyo
        now = datetime(2025, 3, 10, 14, 30, tzinfo=ZoneInfo('UTC'))

        [event] = collect_daily_exercise_events(now)

        self.assertIsInstance(event, DailyExerciseEvent)
        self.assertEqual(event.recipient_ids, [denver.user_id])
        self.assertEqual(event.title, 'Strength Base - Day 10')
        self.assertEqual(event.message, '2 exercise(s) for MONDAY')
        self.assertEqual(event.job_key, f'user_program:{denver.pk}:2025-03-10')
        self.assertEqual([e['title'] for e in event.metadata['exercises']], ['Squat', 'Row'])

    def test_invalid_timezone_falls_back_to_utc(self):
        self.enroll('Not/AZone')
        now = datetime(2025, 3, 10, 7, 15, tzinfo=ZoneInfo('UTC'))
        self.assertEqual(len(collect_daily_exercise_events(now)), 1)

    def test_skips_programs_not_in_progress_or_without_exercises(self):
        self.enroll('UTC', status=UserProgram.COMPLETED)
        self.enroll('UTC', start=date(2025, 4, 1))
        wednesday = datetime(2025, 3, 12, 8, 0, tzinfo=ZoneInfo('UTC'))
        monday = datetime(2025, 3, 10, 8, 0, tzinfo=ZoneInfo('UTC'))
        self.assertEqual(collect_daily_exercise_events(wednesday), [])
        self.assertEqual(collect_daily_exercise_events(monday), [])

    def test_overlapping_firings_send_once(self):
        self.enroll('UTC')
        first = datetime(2025, 3, 10, 7, 0, tzinfo=ZoneInfo('UTC'))
        second = datetime(2025, 3, 10, 8, 0, tzinfo=ZoneInfo('UTC'))
        with patch('notifications.scheduling.timezone.now', return_value=first):
            self.assertEqual(enqueue_daily_exercise_reminders.apply().get(), 1)
        with patch('notifications.scheduling.timezone.now', return_value=second):
            self.assertEqual(enqueue_daily_exercise_reminders.apply().get(), 0)
        self.assertEqual(Notification.objects.filter(notification_type=NotificationType.DAILY_EXERCISE).count(), 1)


class NotificationAPITests(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.user = make_user()
        self.client.force_authenticate(user=self.user)
        engine = NotificationEngine(pusher=RecordingPusher(), email_sender=MagicMock(), sms_sender=MagicMock())
        self.first = engine.process(generic_event([self.user], record_id='a-1').to_payload())
        self.second = engine.process(
            ShiftEvent.build('ASSIGN', SHIFT, self.user.id, channels=[Channel.SOCKET]).to_payload()
        )

    def test_list_with_read_flag(self):
        resp = self.client.get('/api/notifications/')
        self.assertEqual(resp.status_code, http_status.HTTP_200_OK)
        self.assertTrue(resp.data['success'])
        self.assertEqual(len(resp.data['data']), 2)
        self.assertTrue(all(item['is_read'] is False for item in resp.data['data']))

    def test_mark_read_and_filter_unread(self):
        resp = self.client.post(f'/api/notifications/{self.first.id}/read/')
        self.assertEqual(resp.status_code, http_status.HTTP_200_OK)
        self.assertTrue(resp.data['data']['is_read'])

        resp = self.client.get('/api/notifications/?unread=true')
        self.assertEqual([item['id'] for item in resp.data['data']], [str(self.second.id)])

    def test_filter_by_type(self):
        resp = self.client.get('/api/notifications/?type=shift')
        self.assertEqual(len(resp.data['data']), 1)
        self.assertEqual(resp.data['data'][0]['title'], 'New Shift Assigned')

    def test_mark_all_read_and_badge(self):
        resp = self.client.get('/api/notifications/badge/')
        self.assertEqual(resp.data['data']['unread_count'], 2)
        self.assertEqual(resp.data['data']['by_type'], {'generic': 1, 'shift': 1})

        self.client.post('/api/notifications/read-all/')
        resp = self.client.get('/api/notifications/badge/')
        self.assertEqual(resp.data['data']['unread_count'], 0)

    def test_cannot_read_someone_elses(self):
        other = APIClient()
        other.force_authenticate(user=make_user())
        resp = other.post(f'/api/notifications/{self.first.id}/read/')
        self.assertEqual(resp.status_code, http_status.HTTP_404_NOT_FOUND)
        self.assertFalse(resp.data['success'])
