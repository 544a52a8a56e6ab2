import logging

from asgiref.sync import sync_to_async
from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from common.exceptions import ServiceError, Unauthenticated
from . import events
from .authentication import authenticate_scope
from .presence import Connection, get_presence_registry
from .push import ChannelLayerPusher

logger = logging.getLogger(__name__)


class AuthenticatedConsumer(AsyncJsonWebsocketConsumer):
    """
    Base websocket consumer: JWT handshake, presence bookkeeping and
    action routing. Subclasses implement `get_handlers()` returning
    {action: coroutine(content)}.

    Every inbound frame renews the user's presence entry; idle clients send
    {"action": "ping"} to keep it alive and get {"type": "pong"} back.

    Server sends:
        {"type": "connection.success", "data": {"user_id": 1}}
        {"type": "error", "error": "<code>", "message": "...", "action": "..."}
        {"type": "<event name>", "data": {...}}   (see realtime.events)
    """

    async def connect(self):
        self.user = None
        self.connection = None
        # Accept first so the client can receive the error event before close.
        await self.accept()
        try:
            self.user = await database_sync_to_async(authenticate_scope)(self.scope)
        except Unauthenticated as exc:
            logger.warning(f'Websocket rejected ({exc.code}): {exc.message}')
            await self.send_error(exc.message, code=exc.code)
            await self.close(code=4001)
            return

        self.presence = get_presence_registry()
        self.pusher = ChannelLayerPusher(self.presence, self.channel_layer)
        self.connection = Connection(channel_name=self.channel_name, user_id=self.user.id)
        await sync_to_async(self.presence.register, thread_sensitive=False)(self.user.id, self.connection)
        await self.send_json({'type': events.CONNECTION_SUCCESS, 'data': {'user_id': self.user.id}})
        logger.info(f'Websocket connected: user {self.user.id} ({self.__class__.__name__})')

    async def disconnect(self, close_code):
        if self.connection is not None:
            await sync_to_async(self.presence.unregister, thread_sensitive=False)(self.user.id, self.connection)
            logger.info(f'Websocket disconnected: user {self.user.id} ({close_code})')
            self.connection = None

    def get_handlers(self):
        return {}

    async def receive_json(self, content, **kwargs):
        if self.connection is None:
            return
        action = content.get('action')
        await sync_to_async(self.presence.touch, thread_sensitive=False)(self.user.id)
        if action == 'ping':
            await self.send_json({'type': events.PONG})
            return
        handler = self.get_handlers().get(action)
        if handler is None:
            await self.send_error(f'Unknown action: {action}', code='unknown_action', action=action)
            return
        try:
            await handler(content)
        except ServiceError as exc:
            await self.send_error(exc.message, code=exc.code, action=action)
        except Exception as exc:
            logger.exception(f'Error handling {action} from user {self.user.id}: {exc}')
            await self.send_error('Internal server error.', code='server_error', action=action)

    async def send_error(self, message, code='error', action=None):
        body = {'type': events.ERROR, 'error': code, 'message': message}
        if action:
            body['action'] = action
        await self.send_json(body)

    # ── CHANNEL LAYER EVENTS ──

    async def push_event(self, event):
        """Relay an engine push (ChannelLayerPusher) to this socket."""
        await self.send_json({'type': event['event'], 'data': event['payload']})
