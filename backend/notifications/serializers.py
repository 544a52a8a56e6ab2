from rest_framework import serializers
from .models import Notification, NotificationRecipient, DeadLetterJob


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = [
            'id', 'notification_type', 'title', 'message', 'metadata',
            'record_type', 'record_id', 'created_at',
        ]
        read_only_fields = fields


class MyNotificationSerializer(serializers.ModelSerializer):
    """A notification as seen by one recipient, with that recipient's read flag."""
    id = serializers.UUIDField(source='notification.id', read_only=True)
    notification_type = serializers.CharField(source='notification.notification_type', read_only=True)
    title = serializers.CharField(source='notification.title', read_only=True)
    message = serializers.CharField(source='notification.message', read_only=True)
    metadata = serializers.JSONField(source='notification.metadata', read_only=True)
    created_at = serializers.DateTimeField(source='notification.created_at', read_only=True)

    class Meta:
        model = NotificationRecipient
        fields = ['id', 'notification_type', 'title', 'message', 'metadata', 'is_read', 'read_at', 'created_at']
        read_only_fields = fields


class BadgeCountSerializer(serializers.Serializer):
    unread_count = serializers.IntegerField()
    by_type = serializers.DictField(child=serializers.IntegerField())


class DeadLetterJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = DeadLetterJob
        fields = ['id', 'job_key', 'task_name', 'payload', 'error', 'attempts', 'requeued_at', 'created_at']
        read_only_fields = fields
