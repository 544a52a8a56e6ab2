from django.contrib import admin
from .models import Call, CallParticipant, ICEServer


class CallParticipantInline(admin.TabularInline):
    model = CallParticipant
    extra = 0
    raw_id_fields = ['user']
    readonly_fields = ['status', 'joined_at', 'left_at']


@admin.register(Call)
class CallAdmin(admin.ModelAdmin):
    list_display = ['id', 'call_type', 'status', 'initiated_by',
                    'duration', 'created_at', 'started_at', 'ended_at']
    list_filter = ['call_type', 'status']
    search_fields = ['initiated_by__email']
    readonly_fields = ['id', 'created_at']
    inlines = [CallParticipantInline]


@admin.register(ICEServer)
class ICEServerAdmin(admin.ModelAdmin):
    list_display = ['server_type', 'url', 'is_active', 'priority', 'created_at']
    list_filter = ['server_type', 'is_active']
    list_editable = ['is_active', 'priority']
