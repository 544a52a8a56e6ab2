"""
Message delivery engine.

Persists messages and per-recipient delivery status, then pushes live events
to whichever recipients are connected. Offline recipients get nothing live;
they pick the message up through the REST history endpoints.
"""
import logging
import mimetypes
from collections import defaultdict

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone

from common.exceptions import Conflict, Forbidden, NotFound, translate_errors
from realtime import events
from realtime.presence import get_presence_registry
from realtime.push import ChannelLayerPusher
from .models import (
    Conversation, ConversationParticipant, Message, Attachment,
    MessageStatus, canonical_pair, participant_key, support_key,
)
from .serializers import MessageSerializer

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def infer_message_type(mime_type):
    major = (mime_type or '').split('/')[0]
    return major if major in ('image', 'video', 'audio') else 'file'


class MessageDeliveryEngine:

    def __init__(self, presence=None, pusher=None):
        self.presence = presence or get_presence_registry()
        self.pusher = pusher or ChannelLayerPusher(self.presence)

    # ── CONVERSATIONS ──

    @translate_errors('Could not open conversation')
    def find_or_create_conversation(self, user_a_id, user_b_id):
        """
        Return (conversation, created) for the unordered pair.
        At most one conversation ever exists per pair: the unique
        participant_key decides concurrent first contacts and the loser
        re-reads the winner's row.
        """
        if int(user_a_id) == int(user_b_id):
            raise Conflict('You cannot start a conversation with yourself.')

        User = get_user_model()
        found = User.objects.filter(id__in=[user_a_id, user_b_id]).count()
        if found < 2:
            raise NotFound('User not found.')

        key = participant_key(user_a_id, user_b_id)
        conversation = Conversation.objects.filter(participant_key=key).first()
        if conversation is not None:
            return conversation, False

        try:
            with transaction.atomic():
                conversation = Conversation.objects.create(conv_type='private', participant_key=key)
                ConversationParticipant.objects.bulk_create([
                    ConversationParticipant(conversation=conversation, user_id=uid)
                    for uid in canonical_pair(user_a_id, user_b_id)
                ])
        except IntegrityError:
            logger.info(f'Conversation {key} created concurrently, using existing row')
            return Conversation.objects.get(participant_key=key), False

        logger.info(f'Conversation {conversation.id} created for pair {key}')
        return conversation, True

    @translate_errors('Could not open support conversation')
    def open_support_conversation(self, client_id):
        """
        Return (conversation, created) for the client's group conversation
        with the admins. One per client; concurrent first messages are
        settled by the unique participant_key like private pairs.
        """
        client = get_user_model().objects.filter(id=client_id, is_active=True).first()
        if client is None:
            raise NotFound('User not found.')
        if client.is_staff:
            raise Conflict('Administrators answer clients from their support conversations.')

        key = support_key(client.id)
        conversation = Conversation.objects.filter(participant_key=key).first()
        if conversation is not None:
            return conversation, False

        member_ids = [client.id] + sorted(self._admin_ids())
        try:
            with transaction.atomic():
                conversation = Conversation.objects.create(conv_type='group', participant_key=key, client=client)
                ConversationParticipant.objects.bulk_create([
                    ConversationParticipant(conversation=conversation, user_id=uid) for uid in member_ids
                ])
        except IntegrityError:
            logger.info(f'Support conversation {key} created concurrently, using existing row')
            return Conversation.objects.get(participant_key=key), False

        logger.info(f'Support conversation {conversation.id} opened for client {client.id}')
        return conversation, True

    def send_to_admins(self, client_id, content='', file=None, message_type=None):
        """Client side of the support chat: opens the conversation on first use."""
        conversation, _ = self.open_support_conversation(client_id)
        return self.send_message(conversation.id, client_id, content=content, file=file, message_type=message_type)

    @translate_errors('Could not load conversations')
    def list_conversations(self, user_id):
        """
        Conversations of `user_id`, most recent activity first. Each carries
        `unread_count` and `my_last_message_status` (the caller's own status
        on the last message, None when there is no message yet).
        """
        unread = Q(messages__statuses__user_id=user_id) & ~Q(messages__statuses__status=MessageStatus.READ)
        conversations = list(
            Conversation.objects.filter(conversation_participants__user_id=user_id)
            .select_related('last_message', 'last_message__sender')
            .prefetch_related('conversation_participants__user')
            .annotate(unread_count=Count('messages__statuses', filter=unread, distinct=True))
            .order_by('-updated_at')
        )

        last_ids = [c.last_message_id for c in conversations if c.last_message_id]
        my_statuses = dict(
            MessageStatus.objects.filter(message_id__in=last_ids, user_id=user_id)
            .values_list('message_id', 'status')
        )
        for conversation in conversations:
            conversation.my_last_message_status = my_statuses.get(conversation.last_message_id)
        return conversations

    @translate_errors('Could not delete conversation')
    def delete_conversation(self, conversation_id, actor):
        """Admin-only hard delete; cascades to messages, statuses and calls."""
        if not getattr(actor, 'is_staff', False):
            raise Forbidden('Only administrators can delete conversations.')
        conversation = self._get_conversation(conversation_id)
        participant_ids = conversation.participant_ids()
        with transaction.atomic():
            conversation.delete()
        logger.info(f'Conversation {conversation_id} deleted by admin {actor.id}')

        for uid in participant_ids:
            self._push(uid, events.CONVERSATION_DELETED, {'conversation_id': conversation_id})

    # ── MESSAGES ──

    @translate_errors('Failed to send message')
    def send_message(self, conversation_id, sender_id, content='', file=None, message_type=None):
        conversation = self._get_conversation(conversation_id)
        if conversation.is_support:
            self._join_admins(conversation)
        participant_ids = conversation.participant_ids()
        if sender_id not in participant_ids:
            raise Forbidden('You are not a participant of this conversation.')

        mime_type = None
        if file is not None:
            mime_type = (
                getattr(file, 'content_type', None)
                or mimetypes.guess_type(file.name)[0]
                or 'application/octet-stream'
            )
        if message_type is None:
            message_type = infer_message_type(mime_type) if file is not None else 'text'

        recipient_ids = participant_ids - {sender_id}
        initial = {
            uid: MessageStatus.DELIVERED if self.presence.is_online(uid) else MessageStatus.SENT
            for uid in recipient_ids
        }

        # Message, attachment, pointer and status rows commit together or not at all.
        with transaction.atomic():
            message = Message.objects.create(
                conversation=conversation,
                sender_id=sender_id,
                message_type=message_type,
                content=content or '',
            )
            if file is not None:
                Attachment.objects.create(
                    message=message,
                    file=file,
                    file_name=file.name,
                    file_size=file.size or 0,
                    mime_type=mime_type,
                    uploaded_by_id=sender_id,
                )
            Conversation.objects.filter(id=conversation.id).update(
                last_message=message, updated_at=timezone.now(),
            )
            MessageStatus.objects.bulk_create(
                [MessageStatus(message=message, user_id=sender_id, status=MessageStatus.READ)]
                + [MessageStatus(message=message, user_id=uid, status=s) for uid, s in initial.items()]
            )

        message = self._load_message(message.id)
        payload = MessageSerializer(message).data
        logger.info(f'Message {message.id} sent by {sender_id} in {conversation.id}')

        for uid, status in initial.items():
            reached = self._push(uid, events.MESSAGE_NEW, {
                'conversation_id': conversation.id,
                'message': payload,
                'status': status,
            })
            if reached and status == MessageStatus.DELIVERED:
                self._push(sender_id, events.MESSAGE_STATUS, {
                    'conversation_id': conversation.id,
                    'message_ids': [message.id],
                    'user_id': uid,
                    'status': MessageStatus.DELIVERED,
                })
        return message

    @translate_errors('Could not load messages')
    def list_messages(self, conversation_id, limit=DEFAULT_PAGE_SIZE, cursor=None, user_id=None):
        """
        One page of history, always oldest-first.

        Without a cursor: the newest `limit` messages. With a cursor (a message
        id): the `limit` messages strictly older than it. Pages are fetched
        newest-first and reversed, so walking cursors backwards and
        concatenating in reverse rebuilds the whole history.
        """
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        conversation = self._get_conversation(conversation_id)
        if user_id is not None:
            self._ensure_participant(conversation.id, user_id)

        qs = (
            Message.objects.filter(conversation=conversation)
            .select_related('sender')
            .prefetch_related('attachments', 'statuses')
        )
        if cursor is not None:
            anchor = Message.objects.filter(id=cursor, conversation=conversation).first()
            if anchor is None:
                raise NotFound('Cursor message not found in this conversation.')
            qs = qs.filter(
                Q(created_at__lt=anchor.created_at)
                | Q(created_at=anchor.created_at, id__lt=anchor.id)
            )

        page = list(qs.order_by('-created_at', '-id')[:limit])
        page.reverse()
        return page

    @translate_errors('Could not mark message as read')
    def mark_read(self, message_id, user_id):
        """Idempotent; returns True only when the row actually moved to READ."""
        return self._advance_status(message_id, user_id, MessageStatus.READ)

    @translate_errors('Could not acknowledge delivery')
    def acknowledge_delivery(self, message_id, user_id):
        """SENT -> DELIVERED when a recipient picks the message up after being offline."""
        return self._advance_status(message_id, user_id, MessageStatus.DELIVERED)

    @translate_errors('Could not mark conversation as read')
    def mark_conversation_read(self, conversation_id, user_id):
        conversation = self._get_conversation(conversation_id)
        self._ensure_participant(conversation.id, user_id)

        pending = MessageStatus.objects.filter(
            message__conversation=conversation,
            user_id=user_id,
            status__in=MessageStatus.statuses_before(MessageStatus.READ),
        )
        by_sender = defaultdict(list)
        for message_id, sender_id in pending.values_list('message_id', 'message__sender_id'):
            by_sender[sender_id].append(message_id)
        if not by_sender:
            return 0

        message_ids = [mid for ids in by_sender.values() for mid in ids]
        updated = MessageStatus.objects.filter(
            message_id__in=message_ids,
            user_id=user_id,
            status__in=MessageStatus.statuses_before(MessageStatus.READ),
        ).update(status=MessageStatus.READ, timestamp=timezone.now())

        for sender_id, ids in by_sender.items():
            if sender_id != user_id:
                self._push(sender_id, events.MESSAGE_STATUS, {
                    'conversation_id': conversation.id,
                    'message_ids': ids,
                    'user_id': user_id,
                    'status': MessageStatus.READ,
                })
        return updated

    # ── HELPERS ──

    def _advance_status(self, message_id, user_id, status):
        message = Message.objects.filter(id=message_id).first()
        if message is None:
            raise NotFound('Message not found.')
        self._ensure_participant(message.conversation_id, user_id)

        # A missing row (created concurrently) or a row already at/after
        # `status` is left alone: forward-only, never an error.
        updated = MessageStatus.objects.filter(
            message_id=message.id,
            user_id=user_id,
            status__in=MessageStatus.statuses_before(status),
        ).update(status=status, timestamp=timezone.now())

        if updated and message.sender_id != user_id:
            self._push(message.sender_id, events.MESSAGE_STATUS, {
                'conversation_id': message.conversation_id,
                'message_ids': [message.id],
                'user_id': user_id,
                'status': status,
            })
        return bool(updated)

    def _admin_ids(self):
        return set(
            get_user_model().objects.filter(is_staff=True, is_active=True).values_list('id', flat=True)
        )

    def _join_admins(self, conversation):
        # Admins added after the conversation opened join on the next message
        ConversationParticipant.objects.bulk_create(
            [ConversationParticipant(conversation=conversation, user_id=uid) for uid in self._admin_ids()],
            ignore_conflicts=True,
        )

    def _get_conversation(self, conversation_id):
        conversation = Conversation.objects.filter(id=conversation_id).first()
        if conversation is None:
            raise NotFound('Conversation not found.')
        return conversation

    def _ensure_participant(self, conversation_id, user_id):
        if not ConversationParticipant.objects.filter(
            conversation_id=conversation_id, user_id=user_id,
        ).exists():
            raise Forbidden('You are not a participant of this conversation.')

    def _load_message(self, message_id):
        return (
            Message.objects.select_related('sender')
            .prefetch_related('attachments', 'statuses')
            .get(id=message_id)
        )

    def _push(self, user_id, event, payload):
        # Persisted state is already committed; a broken channel layer only
        # costs the live copy, clients still see it through REST.
        try:
            return self.pusher.push(user_id, event, payload)
        except Exception as exc:
            logger.error(f'Live push {event} to user {user_id} failed: {exc}')
            return 0


def get_delivery_engine():
    return MessageDeliveryEngine()
