from datetime import timedelta
from unittest.mock import patch, MagicMock

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import TestCase
from django.utils import timezone
from rest_framework import status as http_status
from rest_framework.test import APIClient

from common.exceptions import Conflict, Forbidden, NotFound, TransientPersistenceFailure
from common.testing import RecordingPusher, make_user
from realtime import events
from realtime.presence import reset_presence_registry
from .models import Conversation, Message, MessageStatus, participant_key
from .services import MessageDeliveryEngine


class EngineTestCase(TestCase):

    def setUp(self):
        self.pusher = RecordingPusher()
        self.engine = MessageDeliveryEngine(presence=self.pusher.presence, pusher=self.pusher)
        self.alice = make_user('alice')
        self.bob = make_user('bob')

    def status_of(self, message, user):
        return MessageStatus.objects.get(message=message, user=user).status


class FindOrCreateConversationTests(EngineTestCase):

    def test_pair_is_unordered(self):
        first, created = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        second, created_again = self.engine.find_or_create_conversation(self.bob.id, self.alice.id)
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.participant_key, participant_key(self.alice.id, self.bob.id))
        self.assertEqual(first.participant_ids(), {self.alice.id, self.bob.id})

    def test_repeated_calls_yield_one_conversation(self):
        ids = {self.engine.find_or_create_conversation(self.alice.id, self.bob.id)[0].id for _ in range(5)}
        self.assertEqual(len(ids), 1)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_lost_race_uses_winner(self):
        winner, _ = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        stale = MagicMock()
        stale.first.return_value = None
        # The pre-check misses the existing row, so the insert hits the unique key
        with patch.object(Conversation.objects, 'filter', return_value=stale):
            conversation, created = self.engine.find_or_create_conversation(self.bob.id, self.alice.id)
        self.assertFalse(created)
        self.assertEqual(conversation.id, winner.id)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_self_conversation_conflict(self):
        with self.assertRaises(Conflict):
            self.engine.find_or_create_conversation(self.alice.id, self.alice.id)

    def test_unknown_user(self):
        with self.assertRaises(NotFound):
            self.engine.find_or_create_conversation(self.alice.id, 999999)


class SendMessageTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.conversation, _ = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)

    def test_offline_recipient_gets_sent(self):
        message = self.engine.send_message(self.conversation.id, self.alice.id, content='hello')
        self.assertEqual(self.status_of(message, self.alice), MessageStatus.READ)
        self.assertEqual(self.status_of(message, self.bob), MessageStatus.SENT)
        self.assertEqual(self.pusher.pushed, [])

    def test_online_recipient_gets_delivered_and_pushed(self):
        self.pusher.go_online(self.bob.id)
        self.pusher.go_online(self.alice.id)
        message = self.engine.send_message(self.conversation.id, self.alice.id, content='hello')

        self.assertEqual(self.status_of(message, self.bob), MessageStatus.DELIVERED)
        new = self.pusher.events_for(self.bob.id, events.MESSAGE_NEW)
        self.assertEqual(len(new), 1)
        self.assertEqual(new[0]['message']['content'], 'hello')
        receipts = self.pusher.events_for(self.alice.id, events.MESSAGE_STATUS)
        self.assertEqual(receipts[0]['status'], MessageStatus.DELIVERED)

    def test_updates_last_message_pointer(self):
        message = self.engine.send_message(self.conversation.id, self.alice.id, content='hello')
        self.conversation.refresh_from_db()
        self.assertEqual(self.conversation.last_message_id, message.id)

    def test_non_participant_forbidden(self):
        carol = make_user('carol')
        with self.assertRaises(Forbidden):
            self.engine.send_message(self.conversation.id, carol.id, content='hi')

    def test_unknown_conversation(self):
        with self.assertRaises(NotFound):
            self.engine.send_message('8f0c6f8e-0000-4000-8000-000000000000', self.alice.id, content='hi')

    def test_file_infers_type_and_stores_attachment(self):
        upload = SimpleUploadedFile('photo.png', b'\x89PNG....', content_type='image/png')
        message = self.engine.send_message(self.conversation.id, self.alice.id, file=upload)
        self.assertEqual(message.message_type, 'image')
        attachment = message.attachments.get()
        self.assertEqual(attachment.mime_type, 'image/png')
        self.assertEqual(attachment.file_name, 'photo.png')

    def test_failed_status_write_leaves_no_message(self):
        from django.db import DatabaseError
        with patch.object(MessageStatus.objects, 'bulk_create', side_effect=DatabaseError('gone')):
            with self.assertRaises(TransientPersistenceFailure):
                self.engine.send_message(self.conversation.id, self.alice.id, content='hello')
        self.assertFalse(Message.objects.exists())
        self.conversation.refresh_from_db()
        self.assertIsNone(self.conversation.last_message_id)

    def test_broken_push_does_not_fail_send(self):
        self.pusher.go_online(self.bob.id)
        with patch.object(self.pusher, 'push', side_effect=RuntimeError('layer down')):
            message = self.engine.send_message(self.conversation.id, self.alice.id, content='hello')
        self.assertTrue(Message.objects.filter(id=message.id).exists())


class ListMessagesTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.conversation, _ = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        base = timezone.now() - timedelta(hours=1)
        self.messages = []
        for i in range(10):
            message = self.engine.send_message(self.conversation.id, self.alice.id, content=f'm{i + 1}')
            Message.objects.filter(id=message.id).update(created_at=base + timedelta(seconds=i))
            self.messages.append(message)

    def contents(self, page):
        return [m.content for m in page]

    def test_latest_page(self):
        page = self.engine.list_messages(self.conversation.id, limit=3)
        self.assertEqual(self.contents(page), ['m8', 'm9', 'm10'])

    def test_cursor_page(self):
        page = self.engine.list_messages(self.conversation.id, limit=3, cursor=self.messages[7].id)
        self.assertEqual(self.contents(page), ['m5', 'm6', 'm7'])

    def test_walking_cursors_rebuilds_history(self):
        pages, cursor = [], None
        while True:
            page = self.engine.list_messages(self.conversation.id, limit=3, cursor=cursor)
            if not page:
                break
            pages.append(page)
            cursor = page[0].id
        history = [m.content for page in reversed(pages) for m in page]
        self.assertEqual(history, [f'm{i}' for i in range(1, 11)])

    def test_same_timestamp_tiebreak(self):
        same = timezone.now()
        Message.objects.filter(conversation=self.conversation).update(created_at=same)
        pages, cursor = [], None
        while True:
            page = self.engine.list_messages(self.conversation.id, limit=4, cursor=cursor)
            if not page:
                break
            pages.append(page)
            cursor = page[0].id
        ids = [m.id for page in pages for m in page]
        self.assertEqual(len(ids), 10)
        self.assertEqual(len(set(ids)), 10)

    def test_cursor_from_other_conversation(self):
        carol = make_user('carol')
        other, _ = self.engine.find_or_create_conversation(self.alice.id, carol.id)
        foreign = self.engine.send_message(other.id, self.alice.id, content='elsewhere')
        with self.assertRaises(NotFound):
            self.engine.list_messages(self.conversation.id, cursor=foreign.id)

    def test_outsider_cannot_read_history(self):
        carol = make_user('carol')
        with self.assertRaises(Forbidden):
            self.engine.list_messages(self.conversation.id, user_id=carol.id)


class MarkReadTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.conversation, _ = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        self.message = self.engine.send_message(self.conversation.id, self.alice.id, content='hello')

    def test_idempotent(self):
        self.assertTrue(self.engine.mark_read(self.message.id, self.bob.id))
        self.assertFalse(self.engine.mark_read(self.message.id, self.bob.id))
        self.assertEqual(self.status_of(self.message, self.bob), MessageStatus.READ)

    def test_never_moves_backwards(self):
        self.engine.mark_read(self.message.id, self.bob.id)
        self.assertFalse(self.engine.acknowledge_delivery(self.message.id, self.bob.id))
        self.assertEqual(self.status_of(self.message, self.bob), MessageStatus.READ)

    def test_acknowledge_delivery(self):
        self.assertTrue(self.engine.acknowledge_delivery(self.message.id, self.bob.id))
        self.assertEqual(self.status_of(self.message, self.bob), MessageStatus.DELIVERED)

    def test_non_participant_forbidden(self):
        carol = make_user('carol')
        with self.assertRaises(Forbidden):
            self.engine.mark_read(self.message.id, carol.id)
        with self.assertRaises(Forbidden):
            self.engine.mark_conversation_read(self.conversation.id, carol.id)

    def test_unknown_message(self):
        with self.assertRaises(NotFound):
            self.engine.mark_read('8f0c6f8e-0000-4000-8000-000000000000', self.bob.id)

    def test_sender_notified_when_online(self):
        self.pusher.go_online(self.alice.id)
        self.engine.mark_read(self.message.id, self.bob.id)
        receipts = self.pusher.events_for(self.alice.id, events.MESSAGE_STATUS)
        self.assertEqual(receipts[-1]['status'], MessageStatus.READ)
        self.assertEqual(receipts[-1]['user_id'], self.bob.id)

    def test_mark_conversation_read(self):
        self.engine.send_message(self.conversation.id, self.alice.id, content='again')
        self.assertEqual(self.engine.mark_conversation_read(self.conversation.id, self.bob.id), 2)
        self.assertEqual(self.engine.mark_conversation_read(self.conversation.id, self.bob.id), 0)


class DeleteConversationTests(EngineTestCase):

    def test_admin_only(self):
        conversation, _ = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        with self.assertRaises(Forbidden):
            self.engine.delete_conversation(conversation.id, self.alice)

        admin = make_user('admin', is_staff=True)
        self.engine.send_message(conversation.id, self.alice.id, content='hello')
        self.engine.delete_conversation(conversation.id, admin)
        self.assertFalse(Conversation.objects.filter(id=conversation.id).exists())
        self.assertFalse(Message.objects.exists())


class FirstContactScenarioTests(EngineTestCase):

    def test_send_list_read(self):
        # A writes to offline B for the first time
        conversation, created = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        message = self.engine.send_message(conversation.id, self.alice.id, content='hello')
        self.assertTrue(created)
        self.assertEqual(Conversation.objects.count(), 1)
        self.assertEqual(Message.objects.count(), 1)
        self.assertEqual(self.status_of(message, self.bob), MessageStatus.SENT)

        # B comes online and lists conversations
        self.pusher.go_online(self.bob.id)
        [listed] = self.engine.list_conversations(self.bob.id)
        self.assertEqual(listed.last_message.content, 'hello')
        self.assertEqual(listed.my_last_message_status, MessageStatus.SENT)
        self.assertEqual(listed.unread_count, 1)

        # B reads it
        self.engine.mark_read(message.id, self.bob.id)
        self.assertEqual(self.status_of(message, self.bob), MessageStatus.READ)

        # A's own row was READ from the start
        [mine] = self.engine.list_conversations(self.alice.id)
        self.assertEqual(mine.my_last_message_status, MessageStatus.READ)
        self.assertEqual(mine.unread_count, 0)


class SupportConversationTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.coach = make_user('coach', is_staff=True)
        self.head_coach = make_user('headcoach', is_staff=True)

    def test_client_message_reaches_every_admin(self):
        self.pusher.go_online(self.coach.id)
        self.pusher.go_online(self.head_coach.id)
        message = self.engine.send_to_admins(self.alice.id, content='my knee hurts')

        conversation = message.conversation
        self.assertEqual(conversation.conv_type, 'group')
        self.assertEqual(conversation.client_id, self.alice.id)
        self.assertEqual(conversation.participant_ids(), {self.alice.id, self.coach.id, self.head_coach.id})
        for admin in (self.coach, self.head_coach):
            self.assertEqual(len(self.pusher.events_for(admin.id, events.MESSAGE_NEW)), 1)
            self.assertEqual(self.status_of(message, admin), MessageStatus.DELIVERED)
        self.assertEqual(self.pusher.events_for(self.bob.id), [])

    def test_one_conversation_per_client(self):
        first, created = self.engine.open_support_conversation(self.alice.id)
        second, created_again = self.engine.open_support_conversation(self.alice.id)
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)

        self.engine.send_to_admins(self.alice.id, content='one')
        self.engine.send_to_admins(self.alice.id, content='two')
        self.assertEqual(Conversation.objects.filter(conv_type='group').count(), 1)

    def test_admin_reply_reaches_client_and_other_admins(self):
        conversation, _ = self.engine.open_support_conversation(self.alice.id)
        self.pusher.go_online(self.alice.id)
        self.pusher.go_online(self.head_coach.id)

        self.engine.send_message(conversation.id, self.coach.id, content='ice it tonight')
        [to_client] = self.pusher.events_for(self.alice.id, events.MESSAGE_NEW)
        self.assertEqual(to_client['message']['content'], 'ice it tonight')
        self.assertEqual(len(self.pusher.events_for(self.head_coach.id, events.MESSAGE_NEW)), 1)

    def test_admin_added_later_joins_on_next_message(self):
        conversation, _ = self.engine.open_support_conversation(self.alice.id)
        trainer = make_user('trainer', is_staff=True)

        message = self.engine.send_to_admins(self.alice.id, content='anyone there?')
        self.assertIn(trainer.id, conversation.participant_ids())
        self.assertEqual(self.status_of(message, trainer), MessageStatus.SENT)

    def test_other_clients_cannot_write_in(self):
        conversation, _ = self.engine.open_support_conversation(self.alice.id)
        with self.assertRaises(Forbidden):
            self.engine.send_message(conversation.id, self.bob.id, content='hi')

    def test_admin_cannot_open_support_conversation(self):
        with self.assertRaises(Conflict):
            self.engine.open_support_conversation(self.coach.id)

    def test_unknown_client(self):
        with self.assertRaises(NotFound):
            self.engine.open_support_conversation(999999)

    def test_private_conversations_stay_private(self):
        conversation, _ = self.engine.find_or_create_conversation(self.alice.id, self.bob.id)
        self.engine.send_message(conversation.id, self.alice.id, content='hey')
        self.assertEqual(conversation.participant_ids(), {self.alice.id, self.bob.id})


class ChatAPITests(TestCase):

    def setUp(self):
        reset_presence_registry()
        self.client = APIClient()
        self.alice = make_user('alice')
        self.bob = make_user('bob')
        self.client.force_authenticate(user=self.alice)

    def tearDown(self):
        reset_presence_registry()

    def test_first_contact_then_list(self):
        resp = self.client.post(f'/api/chat/users/{self.bob.id}/messages/', {'content': 'hello'}, format='json')
        self.assertEqual(resp.status_code, http_status.HTTP_201_CREATED)
        self.assertTrue(resp.data['success'])

        resp = self.client.get('/api/chat/conversations/')
        self.assertEqual(resp.status_code, http_status.HTTP_200_OK)
        self.assertEqual(len(resp.data['data']), 1)
        self.assertEqual(resp.data['data'][0]['last_message']['content'], 'hello')

    def test_message_pages(self):
        self.client.post(f'/api/chat/users/{self.bob.id}/messages/', {'content': 'one'}, format='json')
        conversation = Conversation.objects.get()
        for text in ('two', 'three'):
            self.client.post(f'/api/chat/conversations/{conversation.id}/messages/', {'content': text}, format='json')

        resp = self.client.get(f'/api/chat/conversations/{conversation.id}/messages/?limit=2')
        data = resp.data['data']
        self.assertEqual([m['content'] for m in data['results']], ['two', 'three'])
        self.assertIsNotNone(data['next_cursor'])

    def test_empty_message_rejected(self):
        resp = self.client.post(f'/api/chat/users/{self.bob.id}/messages/', {'content': '  '}, format='json')
        self.assertEqual(resp.status_code, http_status.HTTP_400_BAD_REQUEST)
        self.assertFalse(resp.data['success'])
        self.assertIsNone(resp.data['data'])

    def test_send_to_self_conflict(self):
        resp = self.client.post(f'/api/chat/users/{self.alice.id}/messages/', {'content': 'me'}, format='json')
        self.assertEqual(resp.status_code, http_status.HTTP_409_CONFLICT)
        self.assertEqual(resp.data['error'], 'conflict')

    def test_mark_read_by_outsider_forbidden(self):
        self.client.post(f'/api/chat/users/{self.bob.id}/messages/', {'content': 'hello'}, format='json')
        message = Message.objects.get()
        outsider = APIClient()
        outsider.force_authenticate(user=make_user('carol'))
        resp = outsider.post(f'/api/chat/messages/{message.id}/read/')
        self.assertEqual(resp.status_code, http_status.HTTP_403_FORBIDDEN)
        self.assertFalse(resp.data['success'])

    def test_delete_requires_admin(self):
        self.client.post(f'/api/chat/users/{self.bob.id}/messages/', {'content': 'hello'}, format='json')
        conversation = Conversation.objects.get()
        resp = self.client.delete(f'/api/chat/conversations/{conversation.id}/')
        self.assertEqual(resp.status_code, http_status.HTTP_403_FORBIDDEN)

    def test_support_message_opens_admin_conversation(self):
        coach = make_user('coach', is_staff=True)
        resp = self.client.post('/api/chat/support/messages/', {'content': 'question about my plan'}, format='json')
        self.assertEqual(resp.status_code, http_status.HTTP_201_CREATED)

        conversation = Conversation.objects.get(conv_type='group')
        self.assertEqual(conversation.participant_ids(), {self.alice.id, coach.id})

        admin_client = APIClient()
        admin_client.force_authenticate(user=coach)
        resp = admin_client.get('/api/chat/conversations/')
        [listed] = resp.data['data']
        self.assertEqual(listed['client'], self.alice.id)
        self.assertEqual(listed['unread_count'], 1)
