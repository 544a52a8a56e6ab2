from django.contrib import admin
from .models import Conversation, ConversationParticipant, Message, Attachment, MessageStatus


class ConversationParticipantInline(admin.TabularInline):
    model = ConversationParticipant
    extra = 0
    raw_id_fields = ['user']


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ['id', 'conv_type', 'participant_key', 'client', 'created_at', 'updated_at']
    list_filter = ['conv_type']
    search_fields = ['participant_key']
    raw_id_fields = ['client', 'last_message']
    inlines = [ConversationParticipantInline]


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ['id', 'conversation', 'sender', 'message_type', 'created_at']
    list_filter = ['message_type']
    search_fields = ['sender__email']
    raw_id_fields = ['conversation', 'sender']


@admin.register(Attachment)
class AttachmentAdmin(admin.ModelAdmin):
    list_display = ['id', 'message', 'file_name', 'file_size', 'mime_type']


@admin.register(MessageStatus)
class MessageStatusAdmin(admin.ModelAdmin):
    list_display = ['message', 'user', 'status', 'timestamp']
    list_filter = ['status']
