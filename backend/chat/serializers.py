from rest_framework import serializers
from .models import Conversation, Message, Attachment, MessageStatus
from accounts.serializers import UserPublicSerializer

MAX_ATTACHMENT_SIZE = 100 * 1024 * 1024  # 100MB, same as FILE_UPLOAD_MAX_MEMORY_SIZE


class AttachmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Attachment
        fields = ['id', 'file', 'file_name', 'file_size', 'mime_type', 'created_at']
        read_only_fields = fields


class MessageStatusSerializer(serializers.ModelSerializer):
    class Meta:
        model = MessageStatus
        fields = ['user', 'status', 'timestamp']


class MessageSerializer(serializers.ModelSerializer):
    sender = UserPublicSerializer(read_only=True)
    attachments = AttachmentSerializer(many=True, read_only=True)
    statuses = MessageStatusSerializer(many=True, read_only=True)

    class Meta:
        model = Message
        fields = [
            'id', 'conversation', 'sender', 'message_type', 'content',
            'attachments', 'statuses', 'created_at',
        ]
        read_only_fields = fields


class LastMessageSerializer(serializers.ModelSerializer):
    sender = UserPublicSerializer(read_only=True)

    class Meta:
        model = Message
        fields = ['id', 'sender', 'message_type', 'content', 'created_at']


class ConversationListSerializer(serializers.ModelSerializer):
    """Conversation row for the list view; expects list_conversations() annotations."""
    participants = serializers.SerializerMethodField()
    last_message = LastMessageSerializer(read_only=True)
    last_message_status = serializers.SerializerMethodField()
    unread_count = serializers.IntegerField(read_only=True, default=0)

    class Meta:
        model = Conversation
        fields = [
            'id', 'conv_type', 'client', 'participants', 'last_message',
            'last_message_status', 'unread_count', 'created_at', 'updated_at',
        ]

    def get_participants(self, obj):
        users = [p.user for p in obj.conversation_participants.all()]
        return UserPublicSerializer(users, many=True, context=self.context).data

    def get_last_message_status(self, obj):
        return getattr(obj, 'my_last_message_status', None)


class SendMessageSerializer(serializers.Serializer):
    content = serializers.CharField(required=False, allow_blank=True, default='', max_length=10000)
    file = serializers.FileField(required=False, allow_null=True, default=None)
    message_type = serializers.ChoiceField(choices=Message.MSG_TYPES, required=False)

    def validate_file(self, value):
        if value is not None and value.size > MAX_ATTACHMENT_SIZE:
            raise serializers.ValidationError('File too large. Maximum size is 100MB.')
        return value

    def validate(self, attrs):
        if not attrs.get('content', '').strip() and not attrs.get('file'):
            raise serializers.ValidationError('A message needs content or a file.')
        return attrs


class MessagePageQuerySerializer(serializers.Serializer):
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100, default=50)
    cursor = serializers.UUIDField(required=False, allow_null=True, default=None)
