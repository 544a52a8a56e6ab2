from channels.db import database_sync_to_async

from realtime import events
from realtime.consumers import AuthenticatedConsumer
from realtime.push import to_wire
from .services import CallSignalingEngine


class CallSignalingConsumer(AuthenticatedConsumer):
    """
    WebSocket consumer for WebRTC call signaling.

    Connection: ws://host/ws/calls/  (Authorization: Bearer <jwt> or ?token=<jwt>)

    Flow:
    1. Caller sends: {"action": "initiate_call", "conversation_id": "uuid", "call_type": "audio|video",
                      "participant_ids": [2, 3]}            (participant_ids optional)
       Caller gets {"type": "call.initiated"}; every target gets {"type": "call.initiate"}.
    2. Callee sends: {"action": "accept_call", "call_id": "uuid"}
       OR: {"action": "reject_call", "call_id": "uuid"}          -> the caller is notified
    3. Peers exchange SDP and ICE, always addressed to one user:
       {"action": "offer", "call_id": "uuid", "target_user_id": 2, "sdp": {...}}
       {"action": "answer", "call_id": "uuid", "target_user_id": 1, "sdp": {...}}
       {"action": "ice_candidate", "call_id": "uuid", "target_user_id": 2, "candidate": {...}}
    4. Group calls: {"action": "join_call"} / {"action": "leave_call"}  -> acknowledged to the sender only
    5. Either party sends: {"action": "end_call", "call_id": "uuid"}    -> acknowledged to the sender only
    """

    async def connect(self):
        await super().connect()
        if self.connection is not None:
            self.engine = CallSignalingEngine(presence=self.presence, pusher=self.pusher)

    def get_handlers(self):
        return {
            'initiate_call': self._handle_initiate,
            'accept_call': self._participant_action('accept'),
            'reject_call': self._participant_action('reject'),
            'join_call': self._participant_action('join'),
            'leave_call': self._participant_action('leave'),
            'end_call': self._participant_action('end'),
            'offer': self._relay('offer', 'sdp'),
            'answer': self._relay('answer', 'sdp'),
            'ice_candidate': self._relay('ice_candidate', 'candidate'),
        }

    async def _handle_initiate(self, data):
        payload = await self._initiate(
            data.get('conversation_id'),
            data.get('call_type', 'audio'),
            data.get('participant_ids'),
        )
        await self.send_json({'type': events.CALL_INITIATED, 'data': payload})

    def _participant_action(self, name):
        async def handler(data):
            method = getattr(self.engine, name)
            await database_sync_to_async(method)(data.get('call_id'), self.user.id)
        return handler

    def _relay(self, kind, field):
        async def handler(data):
            await database_sync_to_async(self.engine.relay_signal)(
                kind,
                data.get('call_id'),
                self.user.id,
                data.get('target_user_id'),
                {field: data.get(field)},
            )
        return handler

    @database_sync_to_async
    def _initiate(self, conversation_id, call_type, participant_ids):
        call = self.engine.initiate(conversation_id, self.user.id, call_type, participant_ids)
        return to_wire(self.engine.call_payload(call))
