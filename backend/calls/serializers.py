from rest_framework import serializers
from .models import Call, CallParticipant
from accounts.serializers import UserPublicSerializer


class CallParticipantSerializer(serializers.ModelSerializer):
    user = UserPublicSerializer(read_only=True)

    class Meta:
        model = CallParticipant
        fields = ['user', 'status', 'joined_at', 'left_at']


class CallSerializer(serializers.ModelSerializer):
    initiated_by = UserPublicSerializer(read_only=True)
    participants = CallParticipantSerializer(many=True, read_only=True)
    direction = serializers.SerializerMethodField()

    class Meta:
        model = Call
        fields = [
            'id', 'conversation', 'call_type', 'status', 'initiated_by',
            'participants', 'direction',
            'created_at', 'started_at', 'ended_at', 'duration',
        ]

    def get_direction(self, obj):
        request = self.context.get('request')
        if request and request.user:
            if obj.initiated_by_id == request.user.id:
                return 'outgoing'
            return 'incoming'
        return None


class CallLogSerializer(serializers.ModelSerializer):
    """Simplified serializer for call log list"""
    initiated_by = UserPublicSerializer(read_only=True)
    my_status = serializers.SerializerMethodField()
    direction = serializers.SerializerMethodField()

    class Meta:
        model = Call
        fields = [
            'id', 'conversation', 'call_type', 'status', 'initiated_by',
            'my_status', 'direction', 'duration', 'created_at',
        ]

    def get_my_status(self, obj):
        request = self.context.get('request')
        if request and request.user:
            for participant in obj.participants.all():
                if participant.user_id == request.user.id:
                    return participant.status
        return None

    def get_direction(self, obj):
        request = self.context.get('request')
        if request and request.user:
            return 'outgoing' if obj.initiated_by_id == request.user.id else 'incoming'
        return None
