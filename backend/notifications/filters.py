import django_filters

from .models import NotificationRecipient, NotificationType


class MyNotificationFilter(django_filters.FilterSet):
    unread = django_filters.BooleanFilter(method='filter_unread')
    type = django_filters.ChoiceFilter(field_name='notification__notification_type', choices=NotificationType.choices)

    class Meta:
        model = NotificationRecipient
        fields = ['unread', 'type']

    def filter_unread(self, queryset, name, value):
        if value is None:
            return queryset
        return queryset.filter(is_read=not value)
