from channels.db import database_sync_to_async

from common.exceptions import ValidationError
from realtime import events
from realtime.consumers import AuthenticatedConsumer
from realtime.push import to_wire
from .serializers import MessageSerializer
from .services import MessageDeliveryEngine


class ChatConsumer(AuthenticatedConsumer):
    """
    WebSocket consumer for real-time chat messaging.

    Connection: ws://host/ws/chat/  (Authorization: Bearer <jwt> or ?token=<jwt>)

    Client sends:
        {"action": "send_message", "conversation_id": "uuid", "content": "hi"}
        {"action": "send_message", "recipient_id": 2, "content": "hi"}      (first contact)
        {"action": "send_to_admins", "content": "hi"}                       (client to the admin group)
        {"action": "mark_read", "message_id": "uuid"}
        {"action": "mark_conversation_read", "conversation_id": "uuid"}
        {"action": "delivered", "message_id": "uuid"}

    Server sends:
        {"type": "chat.message.sent", "data": {...message}}
        {"type": "chat.message.new", "data": {"conversation_id", "message", "status"}}
        {"type": "chat.message.status", "data": {"conversation_id", "message_ids", "user_id", "status"}}
    """

    async def connect(self):
        await super().connect()
        if self.connection is not None:
            self.engine = MessageDeliveryEngine(presence=self.presence, pusher=self.pusher)

    def get_handlers(self):
        return {
            'send_message': self._handle_send_message,
            'send_to_admins': self._handle_send_to_admins,
            'mark_read': self._handle_mark_read,
            'mark_conversation_read': self._handle_mark_conversation_read,
            'delivered': self._handle_delivered,
        }

    # ── MESSAGE HANDLERS ──

    async def _handle_send_message(self, data):
        message = await self._send_message(
            conversation_id=data.get('conversation_id'),
            recipient_id=data.get('recipient_id'),
            content=data.get('content', ''),
        )
        await self.send_json({'type': events.MESSAGE_SENT, 'data': message})

    async def _handle_send_to_admins(self, data):
        message = await self._send_to_admins(data.get('content', ''))
        await self.send_json({'type': events.MESSAGE_SENT, 'data': message})

    async def _handle_mark_read(self, data):
        await database_sync_to_async(self.engine.mark_read)(data.get('message_id'), self.user.id)

    async def _handle_mark_conversation_read(self, data):
        await database_sync_to_async(self.engine.mark_conversation_read)(
            data.get('conversation_id'), self.user.id,
        )

    async def _handle_delivered(self, data):
        await database_sync_to_async(self.engine.acknowledge_delivery)(data.get('message_id'), self.user.id)

    # ── DATABASE OPERATIONS ──

    @database_sync_to_async
    def _send_message(self, conversation_id, recipient_id, content):
        if not (content or '').strip():
            raise ValidationError('Message content is required.')
        if not conversation_id:
            if not isinstance(recipient_id, int):
                raise ValidationError('conversation_id or a numeric recipient_id is required.')
            conversation, _ = self.engine.find_or_create_conversation(self.user.id, recipient_id)
            conversation_id = conversation.id
        message = self.engine.send_message(conversation_id, self.user.id, content=content)
        return to_wire(MessageSerializer(message).data)

    @database_sync_to_async
    def _send_to_admins(self, content):
        if not (content or '').strip():
            raise ValidationError('Message content is required.')
        message = self.engine.send_to_admins(self.user.id, content=content)
        return to_wire(MessageSerializer(message).data)
