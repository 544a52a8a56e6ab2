from django.contrib import admin, messages
from .models import Notification, NotificationRecipient, DeadLetterJob
from .services import requeue_dead_letter


class NotificationRecipientInline(admin.TabularInline):
    model = NotificationRecipient
    extra = 0
    raw_id_fields = ['user']
    readonly_fields = ['read_at']


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ['title', 'notification_type', 'record_type', 'record_id', 'dispatched_at', 'created_at']
    list_filter = ['notification_type', 'record_type', 'created_at']
    search_fields = ['title', 'message', 'job_key']
    readonly_fields = ['id', 'job_key', 'dispatched_at', 'created_at']
    inlines = [NotificationRecipientInline]


@admin.register(DeadLetterJob)
class DeadLetterJobAdmin(admin.ModelAdmin):
    list_display = ['job_key', 'task_name', 'attempts', 'requeued_at', 'created_at']
    list_filter = ['task_name', 'created_at']
    search_fields = ['job_key', 'error']
    readonly_fields = ['id', 'job_key', 'task_name', 'payload', 'error', 'attempts', 'requeued_at', 'created_at']
    actions = ['requeue']

    @admin.action(description='Requeue selected jobs')
    def requeue(self, request, queryset):
        for job in queryset:
            requeue_dead_letter(job.pk)
        self.message_user(request, f'{queryset.count()} job(s) requeued.', messages.SUCCESS)
