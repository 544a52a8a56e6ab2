"""
"Push to user" capability handed to the chat, calls and notifications engines.

Engines only know this class; they never reach into consumers. Delivery goes
through the Channels layer to every channel the presence registry lists for
the user, so it works from consumers, REST views and Celery workers alike.
"""
import json
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.core.serializers.json import DjangoJSONEncoder

from .presence import get_presence_registry

logger = logging.getLogger(__name__)


def to_wire(payload):
    """UUIDs, datetimes and Decimals become JSON-safe primitives."""
    return json.loads(json.dumps(payload, cls=DjangoJSONEncoder))


class ChannelLayerPusher:

    def __init__(self, presence=None, channel_layer=None):
        self.presence = presence or get_presence_registry()
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    async def apush(self, user_id, event, payload):
        connections = self.presence.connections_for(user_id)
        if not connections:
            logger.debug(f'User {user_id} offline, dropping {event}')
            return 0
        message = {'type': 'push.event', 'event': event, 'payload': to_wire(payload)}
        for connection in connections:
            await self.channel_layer.send(connection.channel_name, message)
        return len(connections)

    def push(self, user_id, event, payload):
        """Blocking variant for engines running in sync code. Returns connections reached."""
        return async_to_sync(self.apush)(user_id, event, payload)


def get_pusher():
    return ChannelLayerPusher()
