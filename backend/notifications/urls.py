from django.urls import path
from . import views

app_name = 'notifications'

urlpatterns = [
    # Literal paths before uuid paths
    path('', views.NotificationListView.as_view(), name='notification-list'),
    path('read-all/', views.NotificationMarkAllReadView.as_view(), name='mark-all-read'),
    path('badge/', views.BadgeCountView.as_view(), name='badge-count'),
    path('<uuid:notification_id>/read/', views.NotificationMarkReadView.as_view(), name='mark-read'),
]
