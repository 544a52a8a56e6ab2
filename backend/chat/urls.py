from django.urls import path
from . import views

urlpatterns = [
    path('conversations/', views.ConversationListView.as_view(), name='conversation-list'),
    path('conversations/<uuid:conversation_id>/', views.ConversationDetailView.as_view(), name='conversation-detail'),
    path('conversations/<uuid:conversation_id>/messages/', views.MessageListView.as_view(), name='message-list'),
    path('conversations/<uuid:conversation_id>/read/', views.ConversationReadView.as_view(), name='conversation-read'),
    path('users/<int:user_id>/messages/', views.DirectMessageView.as_view(), name='direct-message'),
    path('support/messages/', views.SupportMessageView.as_view(), name='support-message'),
    path('messages/<uuid:message_id>/read/', views.MessageReadView.as_view(), name='message-read'),
    path('messages/<uuid:message_id>/delivered/', views.MessageDeliveredView.as_view(), name='message-delivered'),
]
