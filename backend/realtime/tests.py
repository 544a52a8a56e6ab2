import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

from channels.layers import InMemoryChannelLayer
from channels.testing import WebsocketCommunicator
from django.test import TestCase, TransactionTestCase
from rest_framework_simplejwt.tokens import AccessToken

from chat.consumers import ChatConsumer
from common.testing import make_user, bearer_headers
from . import events
from .authentication import (
    extract_token, verify_token, authenticate_scope,
    MissingCredential, MalformedCredential, ExpiredOrInvalidSignature,
    UserNotFound, UserInactive,
)
from .presence import (
    Connection, InMemoryPresenceRegistry, RedisPresenceRegistry,
    get_presence_registry, reset_presence_registry,
)
from .push import ChannelLayerPusher


class InMemoryPresenceRegistryTests(TestCase):

    def setUp(self):
        self.registry = InMemoryPresenceRegistry()

    def test_two_connections_then_unregister_one(self):
        first, second = Connection('chan.a', 1), Connection('chan.b', 1)
        self.registry.register(1, first)
        self.registry.register(1, second)

        self.registry.unregister(1, first)
        self.assertTrue(self.registry.is_online(1))
        self.assertEqual(self.registry.connections_for(1), {second})

        self.registry.unregister(1, second)
        self.assertFalse(self.registry.is_online(1))
        self.assertEqual(self.registry.size(), 0)

    def test_unregister_unknown_is_noop(self):
        self.registry.unregister(42, Connection('chan.x', 42))
        self.assertEqual(self.registry.size(), 0)

    def test_connections_for_returns_copy(self):
        self.registry.register(1, Connection('chan.a', 1))
        snapshot = self.registry.connections_for(1)
        snapshot.clear()
        self.assertTrue(self.registry.is_online(1))

    def test_concurrent_register_unregister_loses_nothing(self):
        keep = [Connection(f'keep.{i}', 7) for i in range(50)]
        churn = [Connection(f'churn.{i}', 7) for i in range(50)]

        def add(conns):
            for c in conns:
                self.registry.register(7, c)

        def add_remove(conns):
            for c in conns:
                self.registry.register(7, c)
                self.registry.unregister(7, c)

        threads = [threading.Thread(target=add, args=(keep,)), threading.Thread(target=add_remove, args=(churn,))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(self.registry.connections_for(7), set(keep))
        self.assertEqual(self.registry.size(), 1)

    def test_singleton_follows_setting(self):
        reset_presence_registry()
        self.assertIsInstance(get_presence_registry(), InMemoryPresenceRegistry)
        self.assertIs(get_presence_registry(), get_presence_registry())
        reset_presence_registry()


class RedisPresenceRegistryTests(TestCase):

    def setUp(self):
        self.redis = MagicMock()
        with patch('django_redis.get_redis_connection', return_value=self.redis):
            self.registry = RedisPresenceRegistry(ttl=600)

    def test_every_register_renews_ttl(self):
        pipe = self.redis.pipeline.return_value
        self.registry.register(3, Connection('chan.a', 3))
        self.registry.register(3, Connection('chan.b', 3))
        self.assertEqual(pipe.expire.call_count, 2)
        pipe.expire.assert_called_with('presence:user:3', 600)

    def test_touch_renews_ttl(self):
        self.registry.touch(3)
        self.redis.expire.assert_called_once_with('presence:user:3', 600)

    def test_in_memory_touch_is_noop(self):
        registry = InMemoryPresenceRegistry()
        registry.touch(3)
        self.assertFalse(registry.is_online(3))


class ConnectionAuthenticatorTests(TestCase):

    def setUp(self):
        self.user = make_user()

    def test_extract_from_header(self):
        scope = {'headers': [(b'authorization', b'Bearer abc.def.ghi')], 'query_string': b''}
        self.assertEqual(extract_token(scope), 'abc.def.ghi')

    def test_extract_from_query_string(self):
        scope = {'headers': [], 'query_string': b'token=abc.def.ghi'}
        self.assertEqual(extract_token(scope), 'abc.def.ghi')

    def test_missing_token(self):
        with self.assertRaises(MissingCredential):
            authenticate_scope({'headers': [], 'query_string': b''})

    def test_malformed_token(self):
        with self.assertRaises(MalformedCredential):
            verify_token('not-a-jwt')

    def test_bad_signature(self):
        token = str(AccessToken.for_user(self.user))
        head, body, _ = token.split('.')
        with self.assertRaises(ExpiredOrInvalidSignature):
            verify_token(f'{head}.{body}.forged')

    def test_expired_token(self):
        token = AccessToken.for_user(self.user)
        token.set_exp(lifetime=-timedelta(minutes=1))
        with self.assertRaises(ExpiredOrInvalidSignature):
            verify_token(str(token))

    def test_user_deleted_after_issue(self):
        token = str(AccessToken.for_user(self.user))
        self.user.delete()
        with self.assertRaises(UserNotFound):
            authenticate_scope({'headers': [(b'authorization', f'Bearer {token}'.encode())]})

    def test_inactive_user(self):
        token = str(AccessToken.for_user(self.user))
        self.user.is_active = False
        self.user.save()
        with self.assertRaises(UserInactive):
            authenticate_scope({'headers': [(b'authorization', f'Bearer {token}'.encode())]})

    def test_valid_token(self):
        user = authenticate_scope({'headers': bearer_headers(self.user)})
        self.assertEqual(user.pk, self.user.pk)


class ChannelLayerPusherTests(TestCase):

    async def test_push_reaches_every_connection(self):
        layer = InMemoryChannelLayer()
        presence = InMemoryPresenceRegistry()
        first = await layer.new_channel()
        second = await layer.new_channel()
        presence.register(5, Connection(first, 5))
        presence.register(5, Connection(second, 5))

        pusher = ChannelLayerPusher(presence, layer)
        reached = await pusher.apush(5, events.NOTIFICATION, {'title': 'Hi'})

        self.assertEqual(reached, 2)
        for channel in (first, second):
            message = await layer.receive(channel)
            self.assertEqual(message['type'], 'push.event')
            self.assertEqual(message['event'], events.NOTIFICATION)
            self.assertEqual(message['payload'], {'title': 'Hi'})

    async def test_offline_user_is_noop(self):
        pusher = ChannelLayerPusher(InMemoryPresenceRegistry(), InMemoryChannelLayer())
        self.assertEqual(await pusher.apush(99, events.NOTIFICATION, {}), 0)


class AuthenticatedConsumerTests(TransactionTestCase):

    def setUp(self):
        reset_presence_registry()
        self.user = make_user()

    def tearDown(self):
        reset_presence_registry()

    async def test_connect_registers_presence(self):
        communicator = WebsocketCommunicator(
            ChatConsumer.as_asgi(), '/ws/chat/', headers=bearer_headers(self.user),
        )
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        response = await communicator.receive_json_from()
        self.assertEqual(response['type'], events.CONNECTION_SUCCESS)
        self.assertEqual(response['data']['user_id'], self.user.id)
        self.assertTrue(get_presence_registry().is_online(self.user.id))

        await communicator.disconnect()
        self.assertFalse(get_presence_registry().is_online(self.user.id))

    async def test_bad_token_gets_error_then_close(self):
        communicator = WebsocketCommunicator(
            ChatConsumer.as_asgi(), '/ws/chat/', headers=[(b'authorization', b'Bearer garbage')],
        )
        await communicator.connect()

        response = await communicator.receive_json_from()
        self.assertEqual(response['type'], events.ERROR)
        self.assertEqual(response['error'], 'malformed_credential')

        closed = await communicator.receive_output()
        self.assertEqual(closed['type'], 'websocket.close')
        self.assertEqual(closed['code'], 4001)
        self.assertEqual(get_presence_registry().size(), 0)

    async def test_unknown_action(self):
        communicator = WebsocketCommunicator(
            ChatConsumer.as_asgi(), '/ws/chat/', headers=bearer_headers(self.user),
        )
        await communicator.connect()
        await communicator.receive_json_from()

        await communicator.send_json_to({'action': 'dance'})
        response = await communicator.receive_json_from()
        self.assertEqual(response['error'], 'unknown_action')
        await communicator.disconnect()

    async def test_ping_renews_presence(self):
        communicator = WebsocketCommunicator(
            ChatConsumer.as_asgi(), '/ws/chat/', headers=bearer_headers(self.user),
        )
        await communicator.connect()
        await communicator.receive_json_from()

        with patch.object(InMemoryPresenceRegistry, 'touch') as touch:
            await communicator.send_json_to({'action': 'ping'})
            response = await communicator.receive_json_from()
            await communicator.send_json_to({'action': 'dance'})
            await communicator.receive_json_from()
        self.assertEqual(response['type'], events.PONG)
        self.assertEqual(touch.call_count, 2)
        touch.assert_called_with(self.user.id)
        await communicator.disconnect()
