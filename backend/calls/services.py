"""
Call signaling state machine.

Call:        initiated -> ongoing -> ended (terminal)
Participant: missed (default, also after reject) -> joined -> left (final)

Once a call has ended every participant action raises CallEnded; ending it
again is a no-op. Accept and reject are reported to the initiator; join,
leave and end are acknowledged on the acting user's own connections.
SDP and ICE payloads are relayed untouched and never stored.
"""
import logging

from django.db import transaction
from django.utils import timezone

from chat.models import Conversation, ConversationParticipant
from common.exceptions import Conflict, Forbidden, NotFound, ValidationError, translate_errors
from realtime import events
from realtime.presence import get_presence_registry
from realtime.push import ChannelLayerPusher
from .models import Call, CallParticipant, ICEServer
from .serializers import CallSerializer

logger = logging.getLogger(__name__)

RELAY_EVENTS = {
    'offer': events.WEBRTC_OFFER,
    'answer': events.WEBRTC_ANSWER,
    'ice_candidate': events.WEBRTC_ICE_CANDIDATE,
}


class CallEnded(Conflict):
    code = 'call_ended'
    default_message = 'This call has already ended.'


class CallSignalingEngine:

    def __init__(self, presence=None, pusher=None):
        self.presence = presence or get_presence_registry()
        self.pusher = pusher or ChannelLayerPusher(self.presence)

    @translate_errors('Could not start call')
    def initiate(self, conversation_id, initiator_id, call_type='audio', participant_ids=None):
        if call_type not in dict(Call.CALL_TYPES):
            raise ValidationError(f'Unknown call type: {call_type}')

        conversation = Conversation.objects.filter(id=conversation_id).first()
        if conversation is None:
            raise NotFound('Conversation not found.')
        members = conversation.participant_ids()
        if initiator_id not in members:
            raise Forbidden('You are not a participant of this conversation.')

        try:
            targets = {int(uid) for uid in participant_ids} if participant_ids else members - {initiator_id}
        except (TypeError, ValueError):
            raise ValidationError('participant_ids must be user ids.')
        targets.discard(initiator_id)
        if not targets:
            raise ValidationError('A call needs at least one other participant.')
        if not targets <= members:
            raise Forbidden('Call participants must belong to the conversation.')

        with transaction.atomic():
            call = Call.objects.create(
                conversation=conversation,
                call_type=call_type,
                initiated_by_id=initiator_id,
            )
            CallParticipant.objects.bulk_create([
                CallParticipant(call=call, user_id=uid) for uid in sorted(targets)
            ])
        logger.info(f'Call {call.id} ({call_type}) initiated by {initiator_id} to {sorted(targets)}')

        payload = self.call_payload(call)
        for uid in targets:
            self._push(uid, events.CALL_INITIATE, payload)
        return call

    @translate_errors('Could not accept call')
    def accept(self, call_id, user_id):
        call, participant = self._transition(call_id, user_id, CallParticipant.JOINED)
        self._push(call.initiated_by_id, events.CALL_ACCEPT, {
            'call_id': call.id,
            'user_id': user_id,
            'joined_at': participant.joined_at,
        })
        return participant

    @translate_errors('Could not reject call')
    def reject(self, call_id, user_id):
        # Declining and never answering are the same outcome: MISSED.
        call, participant = self._transition(call_id, user_id, CallParticipant.MISSED)
        self._push(call.initiated_by_id, events.CALL_REJECT, {
            'call_id': call.id,
            'user_id': user_id,
        })
        return participant

    @translate_errors('Could not join call')
    def join(self, call_id, user_id):
        call, participant = self._transition(call_id, user_id, CallParticipant.JOINED, allow_new=True)
        self._push(user_id, events.CALL_JOIN, {
            'call_id': call.id,
            'user_id': user_id,
            'joined_at': participant.joined_at,
            'ice_servers': ICEServer.webrtc_config(),
        })
        return participant

    @translate_errors('Could not leave call')
    def leave(self, call_id, user_id):
        call, participant = self._transition(call_id, user_id, CallParticipant.LEFT)
        self._push(user_id, events.CALL_LEAVE, {
            'call_id': call.id,
            'user_id': user_id,
            'left_at': participant.left_at,
        })

        if call.status == Call.ONGOING and not call.participants.filter(status=CallParticipant.JOINED).exists():
            call.end_call()
            logger.info(f'Call {call.id} ended: last participant left')
            self._push(user_id, events.CALL_END, self._end_payload(call, user_id))
        return participant

    @translate_errors('Could not end call')
    def end(self, call_id, user_id):
        call = self._get_call(call_id)
        if user_id != call.initiated_by_id and not call.participants.filter(user_id=user_id).exists():
            raise Forbidden('You are not a participant of this call.')
        if call.is_ended:
            return call

        with transaction.atomic():
            call = Call.objects.select_for_update().get(id=call.id)
            if call.is_ended:
                return call
            call.end_call()
            call.participants.filter(status=CallParticipant.JOINED).update(
                status=CallParticipant.LEFT, left_at=call.ended_at,
            )
        logger.info(f'Call {call.id} ended by {user_id} after {call.duration}s')

        self._push(user_id, events.CALL_END, self._end_payload(call, user_id))
        return call

    @translate_errors('Could not relay signal')
    def relay_signal(self, kind, call_id, sender_id, target_user_id, payload):
        """
        Forward an SDP offer/answer or ICE candidate verbatim to the target's
        live connections. Sender and target must both belong to the call.
        Offline targets are skipped without error.
        Returns the number of connections reached.
        """
        event = RELAY_EVENTS.get(kind)
        if event is None:
            raise ValidationError(f'Unknown signal kind: {kind}')
        try:
            target_user_id = int(target_user_id)
        except (TypeError, ValueError):
            raise ValidationError('target_user_id must be a user id.')

        call = self._get_call(call_id)
        if call.is_ended:
            raise CallEnded()
        members = self._call_members(call)
        if sender_id not in members:
            raise Forbidden('You are not a participant of this call.')
        if target_user_id not in members:
            raise Forbidden('The target is not a participant of this call.')

        return self._push(target_user_id, event, {
            'call_id': call.id,
            'from_user_id': sender_id,
            'payload': payload,
        })

    def call_payload(self, call):
        call = Call.objects.select_related('initiated_by').prefetch_related('participants__user').get(id=call.id)
        payload = dict(CallSerializer(call).data)
        payload['ice_servers'] = ICEServer.webrtc_config()
        return payload

    # ── HELPERS ──

    def _transition(self, call_id, user_id, target, allow_new=False):
        call = self._get_call(call_id)
        if call.is_ended:
            raise CallEnded()

        now = timezone.now()
        with transaction.atomic():
            # Only this participant's row is locked; other participants move independently.
            participant = CallParticipant.objects.select_for_update().filter(call=call, user_id=user_id).first()
            if participant is None:
                is_member = ConversationParticipant.objects.filter(
                    conversation_id=call.conversation_id, user_id=user_id,
                ).exists()
                if not (allow_new and is_member):
                    raise Forbidden('You are not a participant of this call.')
                participant = CallParticipant(call=call, user_id=user_id)

            current = participant.status
            if current == CallParticipant.LEFT and target != CallParticipant.LEFT:
                raise Conflict('You already left this call.')

            if target == CallParticipant.JOINED:
                if current != CallParticipant.JOINED:
                    participant.status = CallParticipant.JOINED
                    participant.joined_at = now
                started = Call.objects.filter(id=call.id, status=Call.INITIATED).update(
                    status=Call.ONGOING, started_at=now,
                )
                if started:
                    call.status, call.started_at = Call.ONGOING, now
            elif target == CallParticipant.MISSED:
                if current == CallParticipant.JOINED:
                    raise Conflict('You already joined this call. Leave it instead.')
            elif target == CallParticipant.LEFT:
                if current == CallParticipant.MISSED:
                    raise Conflict('You have not joined this call.')
                if current == CallParticipant.JOINED:
                    participant.status = CallParticipant.LEFT
                    participant.left_at = now

            participant.save()
        return call, participant

    def _get_call(self, call_id):
        call = Call.objects.filter(id=call_id).first()
        if call is None:
            raise NotFound('Call not found.')
        return call

    def _end_payload(self, call, user_id):
        return {
            'call_id': call.id,
            'ended_by': user_id,
            'ended_at': call.ended_at,
            'duration': call.duration,
        }

    def _call_members(self, call):
        return {call.initiated_by_id} | set(call.participants.values_list('user_id', flat=True))

    def _push(self, user_id, event, payload):
        try:
            return self.pusher.push(user_id, event, payload)
        except Exception as exc:
            logger.error(f'Live push {event} to user {user_id} failed: {exc}')
            return 0


def get_call_engine():
    return CallSignalingEngine()
