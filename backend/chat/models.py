import uuid
from django.db import models
from django.conf import settings


def canonical_pair(user_a_id, user_b_id):
    """Both orderings of a pair map to the same (low, high) tuple."""
    return tuple(sorted((int(user_a_id), int(user_b_id))))


def participant_key(user_a_id, user_b_id):
    low, high = canonical_pair(user_a_id, user_b_id)
    return f'{low}:{high}'


def support_key(client_id):
    return f'support:{int(client_id)}'


class Conversation(models.Model):
    CONV_TYPES = [
        ('private', 'Private'),
        ('group', 'Group'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    conv_type = models.CharField(max_length=10, choices=CONV_TYPES, default='private')
    # "<low id>:<high id>" for private conversations, "support:<client id>" for
    # a client's conversation with the admins
    participant_key = models.CharField(max_length=64, unique=True, null=True, blank=True)
    # Set on admin group conversations: the client the admins are talking to
    client = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True,
        on_delete=models.CASCADE, related_name='support_conversations'
    )
    participants = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        through='ConversationParticipant',
        related_name='conversations'
    )
    last_message = models.ForeignKey(
        'Message', null=True, blank=True,
        on_delete=models.SET_NULL, related_name='+'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'conversations'
        ordering = ['-updated_at']

    def __str__(self):
        return f'{self.conv_type} conversation {self.id}'

    def participant_ids(self):
        return set(self.conversation_participants.values_list('user_id', flat=True))

    @property
    def is_support(self):
        return self.conv_type == 'group' and self.client_id is not None


class ConversationParticipant(models.Model):
    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name='conversation_participants'
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='conversation_participations'
    )
    joined_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'conversation_participants'
        unique_together = ['conversation', 'user']

    def __str__(self):
        return f'{self.user_id} in {self.conversation_id}'


class Message(models.Model):
    MSG_TYPES = [
        ('text', 'Text'),
        ('image', 'Image'),
        ('video', 'Video'),
        ('audio', 'Audio'),
        ('file', 'File'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name='messages'
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='sent_messages'
    )
    message_type = models.CharField(max_length=10, choices=MSG_TYPES, default='text')
    content = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'messages'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['conversation', 'created_at'], name='messages_convers_8b3f4e_idx'),
            models.Index(fields=['sender', 'created_at'], name='messages_sender__5c1a2d_idx'),
        ]

    def __str__(self):
        return f'{self.message_type} from {self.sender_id} in {self.conversation_id}'


class Attachment(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    message = models.ForeignKey(Message, on_delete=models.CASCADE, related_name='attachments')
    file = models.FileField(upload_to='attachments/%Y/%m/')
    file_name = models.CharField(max_length=255)
    file_size = models.BigIntegerField(default=0)
    mime_type = models.CharField(max_length=100, default='application/octet-stream')
    uploaded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name='uploaded_attachments',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'attachments'

    def __str__(self):
        return f'{self.file_name} ({self.mime_type})'


class MessageStatus(models.Model):
    SENT = 'sent'
    DELIVERED = 'delivered'
    READ = 'read'
    STATUS_CHOICES = [
        (SENT, 'Sent'),
        (DELIVERED, 'Delivered'),
        (READ, 'Read'),
    ]
    # Statuses only move forward through this order
    ORDER = [SENT, DELIVERED, READ]

    message = models.ForeignKey(Message, on_delete=models.CASCADE, related_name='statuses')
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='message_statuses'
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=SENT)
    timestamp = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'message_statuses'
        unique_together = ['message', 'user']
        indexes = [
            models.Index(fields=['user', 'status'], name='message_sta_user_id_4e7b1c_idx'),
        ]

    def __str__(self):
        return f'{self.message_id} -> {self.user_id}: {self.status}'

    @classmethod
    def statuses_before(cls, status):
        return cls.ORDER[:cls.ORDER.index(status)]
