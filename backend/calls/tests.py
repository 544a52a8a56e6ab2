from channels.testing import WebsocketCommunicator
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status as http_status
from rest_framework.test import APIClient

from chat.models import Conversation, ConversationParticipant
from chat.services import MessageDeliveryEngine
from common.exceptions import Conflict, Forbidden, NotFound, ValidationError
from common.testing import RecordingPusher, make_user, bearer_headers
from realtime import events
from realtime.presence import reset_presence_registry
from .consumers import CallSignalingConsumer
from .models import Call, CallParticipant, ICEServer
from .services import CallEnded, CallSignalingEngine


class CallEngineTestCase(TestCase):

    def setUp(self):
        self.pusher = RecordingPusher()
        self.engine = CallSignalingEngine(presence=self.pusher.presence, pusher=self.pusher)
        self.alice = make_user('alice')
        self.bob = make_user('bob')
        chat = MessageDeliveryEngine(presence=self.pusher.presence, pusher=self.pusher)
        self.conversation, _ = chat.find_or_create_conversation(self.alice.id, self.bob.id)

    def participant(self, call, user):
        return CallParticipant.objects.get(call=call, user=user)


class InitiateTests(CallEngineTestCase):

    def test_creates_missed_rows_and_rings_targets(self):
        self.pusher.go_online(self.bob.id)
        call = self.engine.initiate(self.conversation.id, self.alice.id, 'video')

        self.assertEqual(call.status, Call.INITIATED)
        self.assertEqual(self.participant(call, self.bob).status, CallParticipant.MISSED)
        self.assertFalse(CallParticipant.objects.filter(call=call, user=self.alice).exists())

        [ring] = self.pusher.events_for(self.bob.id, events.CALL_INITIATE)
        self.assertEqual(ring['call_type'], 'video')
        self.assertTrue(ring['ice_servers'])

    def test_outsider_cannot_initiate(self):
        carol = make_user('carol')
        with self.assertRaises(Forbidden):
            self.engine.initiate(self.conversation.id, carol.id)

    def test_bad_call_type(self):
        with self.assertRaises(ValidationError):
            self.engine.initiate(self.conversation.id, self.alice.id, 'hologram')

    def test_unknown_conversation(self):
        with self.assertRaises(NotFound):
            self.engine.initiate('8f0c6f8e-0000-4000-8000-000000000000', self.alice.id)


class TransitionTests(CallEngineTestCase):

    def setUp(self):
        super().setUp()
        self.call = self.engine.initiate(self.conversation.id, self.alice.id)

    def test_accept_joins_only_accepting_participant(self):
        self.engine.accept(self.call.id, self.bob.id)
        bob = self.participant(self.call, self.bob)
        self.assertEqual(bob.status, CallParticipant.JOINED)
        self.assertIsNotNone(bob.joined_at)

        self.call.refresh_from_db()
        self.assertEqual(self.call.status, Call.ONGOING)
        self.assertIsNotNone(self.call.started_at)

    def test_accept_notifies_initiator(self):
        self.pusher.go_online(self.alice.id)
        self.engine.accept(self.call.id, self.bob.id)
        [accepted] = self.pusher.events_for(self.alice.id, events.CALL_ACCEPT)
        self.assertEqual(accepted['user_id'], self.bob.id)

    def test_reject_stays_missed(self):
        self.engine.reject(self.call.id, self.bob.id)
        self.assertEqual(self.participant(self.call, self.bob).status, CallParticipant.MISSED)
        self.call.refresh_from_db()
        self.assertEqual(self.call.status, Call.INITIATED)

    def test_reject_after_join_conflict(self):
        self.engine.accept(self.call.id, self.bob.id)
        with self.assertRaises(Conflict):
            self.engine.reject(self.call.id, self.bob.id)

    def test_leave_without_joining_conflict(self):
        with self.assertRaises(Conflict):
            self.engine.leave(self.call.id, self.bob.id)

    def test_accept_is_idempotent(self):
        first = self.engine.accept(self.call.id, self.bob.id)
        second = self.engine.accept(self.call.id, self.bob.id)
        self.assertEqual(first.joined_at, second.joined_at)

    def test_no_rejoin_after_leave(self):
        self.engine.accept(self.call.id, self.bob.id)
        self.engine.join(self.call.id, self.alice.id)
        self.engine.leave(self.call.id, self.bob.id)
        with self.assertRaises(Conflict):
            self.engine.join(self.call.id, self.bob.id)

    def test_initiator_joins_as_new_participant(self):
        self.engine.join(self.call.id, self.alice.id)
        self.assertEqual(self.participant(self.call, self.alice).status, CallParticipant.JOINED)

    def test_outsider_cannot_join(self):
        carol = make_user('carol')
        with self.assertRaises(Forbidden):
            self.engine.join(self.call.id, carol.id)

    def test_last_leave_ends_call(self):
        self.engine.accept(self.call.id, self.bob.id)
        self.engine.leave(self.call.id, self.bob.id)
        self.call.refresh_from_db()
        self.assertEqual(self.call.status, Call.ENDED)
        self.assertEqual(self.participant(self.call, self.bob).status, CallParticipant.LEFT)

    def test_reject_notifies_initiator(self):
        self.pusher.go_online(self.alice.id)
        self.pusher.go_online(self.bob.id)
        self.engine.reject(self.call.id, self.bob.id)
        [rejected] = self.pusher.events_for(self.alice.id, events.CALL_REJECT)
        self.assertEqual(rejected['user_id'], self.bob.id)
        self.assertEqual(self.pusher.events_for(self.bob.id, events.CALL_REJECT), [])

    def test_join_and_leave_echo_to_actor_only(self):
        self.pusher.go_online(self.alice.id)
        self.pusher.go_online(self.bob.id)
        self.engine.join(self.call.id, self.bob.id)
        self.engine.join(self.call.id, self.alice.id)
        self.engine.leave(self.call.id, self.bob.id)

        self.assertEqual(len(self.pusher.events_for(self.bob.id, events.CALL_JOIN)), 1)
        self.assertEqual(len(self.pusher.events_for(self.bob.id, events.CALL_LEAVE)), 1)
        self.assertEqual(len(self.pusher.events_for(self.alice.id, events.CALL_JOIN)), 1)
        self.assertEqual(self.pusher.events_for(self.alice.id, events.CALL_LEAVE), [])

    def test_auto_end_is_acknowledged_to_last_leaver(self):
        self.pusher.go_online(self.alice.id)
        self.pusher.go_online(self.bob.id)
        self.engine.accept(self.call.id, self.bob.id)
        self.engine.leave(self.call.id, self.bob.id)
        self.assertEqual(len(self.pusher.events_for(self.bob.id, events.CALL_END)), 1)
        self.assertEqual(self.pusher.events_for(self.alice.id, events.CALL_END), [])

    def test_unknown_call(self):
        with self.assertRaises(NotFound):
            self.engine.accept('8f0c6f8e-0000-4000-8000-000000000000', self.bob.id)


class EndCallTests(CallEngineTestCase):

    def setUp(self):
        super().setUp()
        self.call = self.engine.initiate(self.conversation.id, self.alice.id)
        self.engine.accept(self.call.id, self.bob.id)

    def test_end_is_terminal(self):
        self.engine.end(self.call.id, self.alice.id)
        self.call.refresh_from_db()
        self.assertEqual(self.call.status, Call.ENDED)
        self.assertIsNotNone(self.call.ended_at)
        self.assertEqual(self.participant(self.call, self.bob).status, CallParticipant.LEFT)

        for action in (self.engine.accept, self.engine.reject, self.engine.join, self.engine.leave):
            with self.assertRaises(CallEnded):
                action(self.call.id, self.bob.id)

    def test_end_twice_is_noop(self):
        first = self.engine.end(self.call.id, self.bob.id)
        second = self.engine.end(self.call.id, self.alice.id)
        self.assertEqual(first.ended_at, second.ended_at)

    def test_end_acknowledges_only_the_ender(self):
        self.pusher.go_online(self.alice.id)
        self.pusher.go_online(self.bob.id)
        self.engine.end(self.call.id, self.bob.id)
        self.assertEqual(len(self.pusher.events_for(self.bob.id, events.CALL_END)), 1)
        self.assertEqual(self.pusher.events_for(self.alice.id, events.CALL_END), [])

    def test_outsider_cannot_end(self):
        carol = make_user('carol')
        with self.assertRaises(Forbidden):
            self.engine.end(self.call.id, carol.id)


class RelaySignalTests(CallEngineTestCase):

    def setUp(self):
        super().setUp()
        self.call = self.engine.initiate(self.conversation.id, self.alice.id)

    def test_relays_verbatim_to_online_target(self):
        self.pusher.go_online(self.bob.id)
        sdp = {'type': 'offer', 'sdp': 'v=0...'}
        reached = self.engine.relay_signal('offer', self.call.id, self.alice.id, self.bob.id, {'sdp': sdp})
        self.assertEqual(reached, 1)
        [offer] = self.pusher.events_for(self.bob.id, events.WEBRTC_OFFER)
        self.assertEqual(offer['payload'], {'sdp': sdp})
        self.assertEqual(offer['from_user_id'], self.alice.id)
        self.assertEqual(offer['call_id'], self.call.id)

    def test_string_target_id_is_delivered(self):
        self.pusher.go_online(self.bob.id)
        reached = self.engine.relay_signal('answer', self.call.id, self.alice.id, str(self.bob.id), {'sdp': {}})
        self.assertEqual(reached, 1)
        self.assertEqual(len(self.pusher.events_for(self.bob.id, events.WEBRTC_ANSWER)), 1)

    def test_offline_target_is_silent(self):
        calls_before = Call.objects.count()
        reached = self.engine.relay_signal('ice_candidate', self.call.id, self.alice.id, self.bob.id, {'candidate': {}})
        self.assertEqual(reached, 0)
        self.assertEqual(Call.objects.count(), calls_before)

    def test_outsider_cannot_signal_a_member(self):
        carol = make_user('carol')
        self.pusher.go_online(self.bob.id)
        with self.assertRaises(Forbidden):
            self.engine.relay_signal('offer', self.call.id, carol.id, self.bob.id, {'sdp': {}})
        self.assertEqual(self.pusher.events_for(self.bob.id), [])

    def test_member_cannot_signal_an_outsider(self):
        carol = make_user('carol')
        self.pusher.go_online(carol.id)
        with self.assertRaises(Forbidden):
            self.engine.relay_signal('offer', self.call.id, self.alice.id, carol.id, {'sdp': {}})
        self.assertEqual(self.pusher.events_for(carol.id), [])

    def test_unknown_call(self):
        with self.assertRaises(NotFound):
            self.engine.relay_signal('offer', '8f0c6f8e-0000-4000-8000-000000000000', self.alice.id, self.bob.id, {})

    def test_bad_target_id(self):
        with self.assertRaises(ValidationError):
            self.engine.relay_signal('offer', self.call.id, self.alice.id, 'bob', {})

    def test_unknown_kind(self):
        with self.assertRaises(ValidationError):
            self.engine.relay_signal('hangup', self.call.id, self.alice.id, self.bob.id, {})


class ICEServerTests(TestCase):

    @override_settings(DEFAULT_STUN_SERVERS=['stun:stun.example.org:3478'])
    def test_fallback_to_default_stun(self):
        self.assertEqual(ICEServer.webrtc_config(), [{'urls': 'stun:stun.example.org:3478'}])

    def test_configured_servers(self):
        ICEServer.objects.create(server_type='turn', url='turn:turn.example.org', username='u', credential='p')
        self.assertEqual(
            ICEServer.webrtc_config(),
            [{'urls': 'turn:turn.example.org', 'username': 'u', 'credential': 'p'}],
        )


class CallAPITests(CallEngineTestCase):

    def test_call_log_and_missed_count(self):
        call = self.engine.initiate(self.conversation.id, self.alice.id)
        self.engine.end(call.id, self.alice.id)

        client = APIClient()
        client.force_authenticate(user=self.bob)
        resp = client.get('/api/calls/log/')
        self.assertEqual(resp.status_code, http_status.HTTP_200_OK)
        [entry] = resp.data['data']['results']
        self.assertEqual(entry['my_status'], CallParticipant.MISSED)
        self.assertEqual(entry['direction'], 'incoming')

        resp = client.get('/api/calls/missed-count/')
        self.assertEqual(resp.data['data']['missed_calls'], 1)

    def test_received_filter_looks_at_my_own_row(self):
        carol = make_user('carol')
        group = Conversation.objects.create(conv_type='group')
        ConversationParticipant.objects.bulk_create([
            ConversationParticipant(conversation=group, user=user) for user in (self.alice, self.bob, carol)
        ])
        call = self.engine.initiate(group.id, self.alice.id)
        self.engine.accept(call.id, self.bob.id)

        client = APIClient()
        client.force_authenticate(user=self.bob)
        resp = client.get('/api/calls/log/?status=received')
        self.assertEqual([e['id'] for e in resp.data['data']['results']], [str(call.id)])

        client.force_authenticate(user=carol)
        resp = client.get('/api/calls/log/?status=received')
        self.assertEqual(resp.data['data']['results'], [])
        resp = client.get('/api/calls/log/?status=missed')
        self.assertEqual(len(resp.data['data']['results']), 1)

    def test_call_detail_hidden_from_outsiders(self):
        call = self.engine.initiate(self.conversation.id, self.alice.id)
        client = APIClient()
        client.force_authenticate(user=make_user('carol'))
        resp = client.get(f'/api/calls/{call.id}/')
        self.assertEqual(resp.status_code, http_status.HTTP_404_NOT_FOUND)
        self.assertFalse(resp.data['success'])


class CallSignalingConsumerTests(TransactionTestCase):

    def setUp(self):
        reset_presence_registry()
        self.alice = make_user('alice')
        self.bob = make_user('bob')
        pusher = RecordingPusher()
        conversation, _ = MessageDeliveryEngine(presence=pusher.presence, pusher=pusher).find_or_create_conversation(
            self.alice.id, self.bob.id,
        )
        self.call = Call.objects.create(conversation=conversation, call_type='audio', initiated_by=self.alice)
        CallParticipant.objects.create(call=self.call, user=self.bob)

    def tearDown(self):
        reset_presence_registry()

    async def connect(self, user):
        communicator = WebsocketCommunicator(
            CallSignalingConsumer.as_asgi(), '/ws/calls/', headers=bearer_headers(user),
        )
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        hello = await communicator.receive_json_from()
        self.assertEqual(hello['type'], events.CONNECTION_SUCCESS)
        return communicator

    async def test_offer_reaches_target_socket(self):
        caller = await self.connect(self.alice)
        callee = await self.connect(self.bob)

        await caller.send_json_to({
            'action': 'offer',
            'call_id': str(self.call.id),
            'target_user_id': str(self.bob.id),
            'sdp': {'type': 'offer', 'sdp': 'v=0'},
        })
        received = await callee.receive_json_from(timeout=2)
        self.assertEqual(received['type'], events.WEBRTC_OFFER)
        self.assertEqual(received['data']['payload'], {'sdp': {'type': 'offer', 'sdp': 'v=0'}})
        self.assertEqual(received['data']['from_user_id'], self.alice.id)

        await caller.disconnect()
        await callee.disconnect()

    async def test_unknown_call_error_goes_to_actor(self):
        caller = await self.connect(self.alice)
        await caller.send_json_to({'action': 'accept_call', 'call_id': '8f0c6f8e-0000-4000-8000-000000000000'})
        response = await caller.receive_json_from()
        self.assertEqual(response['type'], events.ERROR)
        self.assertEqual(response['error'], 'not_found')
        self.assertEqual(response['action'], 'accept_call')
        await caller.disconnect()
