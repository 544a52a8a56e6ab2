from django.db.models import Count
from django.utils import timezone
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import generics, permissions
from rest_framework.views import APIView

from common.exceptions import NotFound
from common.responses import success_response
from .filters import MyNotificationFilter
from .models import NotificationRecipient
from .serializers import BadgeCountSerializer, MyNotificationSerializer

LATEST_LIMIT = 50


# ────────────────────────── Notification History ──────────────────────────

class NotificationListView(generics.ListAPIView):
    """
    GET /api/notifications/
    Latest notifications for the current user with their read flag.
    Query params: ?type=shift&unread=true
    """
    serializer_class = MyNotificationSerializer
    permission_classes = [permissions.IsAuthenticated]
    pagination_class = None
    filter_backends = [DjangoFilterBackend]
    filterset_class = MyNotificationFilter

    def get_queryset(self):
        return (
            NotificationRecipient.objects.filter(user=self.request.user)
            .select_related('notification')
            .order_by('-notification__created_at')
        )

    def list(self, request, *args, **kwargs):
        queryset = self.filter_queryset(self.get_queryset())[:LATEST_LIMIT]
        serializer = self.get_serializer(queryset, many=True)
        return success_response(serializer.data, message='Notifications retrieved.')


class NotificationMarkReadView(APIView):
    """
    POST /api/notifications/<id>/read/
    Mark a single notification as read.
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, notification_id):
        delivery = (
            NotificationRecipient.objects.filter(notification_id=notification_id, user=request.user)
            .select_related('notification')
            .first()
        )
        if delivery is None:
            raise NotFound('Notification not found.')
        delivery.mark_as_read()
        return success_response(MyNotificationSerializer(delivery).data, message='Marked as read.')


class NotificationMarkAllReadView(APIView):
    """
    POST /api/notifications/read-all/
    Mark all notifications as read.
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        updated = NotificationRecipient.objects.filter(
            user=request.user, is_read=False
        ).update(is_read=True, read_at=timezone.now())
        return success_response({'updated': updated}, message=f'{updated} notifications marked as read.')


# ────────────────────────── Badge Count ──────────────────────────

class BadgeCountView(APIView):
    """
    GET /api/notifications/badge/
    Unread notification count and breakdown by type.
    """
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        rows = (
            NotificationRecipient.objects.filter(user=request.user, is_read=False)
            .values('notification__notification_type')
            .annotate(count=Count('id'))
        )
        by_type = {row['notification__notification_type']: row['count'] for row in rows}
        serializer = BadgeCountSerializer({'unread_count': sum(by_type.values()), 'by_type': by_type})
        return success_response(serializer.data)
