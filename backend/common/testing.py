"""Shared fixtures for the app test suites."""
import itertools

from django.contrib.auth import get_user_model
from rest_framework_simplejwt.tokens import AccessToken

from realtime.presence import Connection, InMemoryPresenceRegistry

_seq = itertools.count(1)


def make_user(username=None, **extra):
    n = next(_seq)
    username = username or f'user{n}'
    extra.setdefault('email', f'{username}@test.com')
    return get_user_model().objects.create_user(
        username=username, password='TestPass123!', **extra
    )


def bearer_headers(user):
    return [(b'authorization', f'Bearer {AccessToken.for_user(user)}'.encode())]


class RecordingPusher:
    """
    Stand-in for ChannelLayerPusher: honours presence like the real one but
    records pushes instead of writing to a channel layer.
    """

    def __init__(self, presence=None):
        self.presence = presence or InMemoryPresenceRegistry()
        self.pushed = []

    def go_online(self, user_id, channel_name=None):
        connection = Connection(channel_name=channel_name or f'test.{user_id}.{next(_seq)}', user_id=user_id)
        self.presence.register(user_id, connection)
        return connection

    def push(self, user_id, event, payload):
        reached = len(self.presence.connections_for(user_id))
        if reached:
            self.pushed.append((user_id, event, payload))
        return reached

    async def apush(self, user_id, event, payload):
        return self.push(user_id, event, payload)

    def events_for(self, user_id, event=None):
        return [
            payload for uid, name, payload in self.pushed
            if uid == user_id and (event is None or name == event)
        ]
