from rest_framework.views import APIView
from rest_framework.permissions import IsAuthenticated, IsAdminUser
from rest_framework.parsers import MultiPartParser, FormParser, JSONParser
from rest_framework import status

from common.responses import success_response
from .serializers import (
    ConversationListSerializer, MessageSerializer,
    SendMessageSerializer, MessagePageQuerySerializer,
)
from .services import get_delivery_engine


class ConversationListView(APIView):
    """GET /api/chat/conversations/ — my conversations, most recent activity first."""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        conversations = get_delivery_engine().list_conversations(request.user.id)
        serializer = ConversationListSerializer(conversations, many=True, context={'request': request})
        return success_response(serializer.data, 'Conversations fetched successfully')


class ConversationDetailView(APIView):
    """DELETE /api/chat/conversations/<id>/ — admin hard delete (messages cascade)."""
    permission_classes = [IsAuthenticated, IsAdminUser]

    def delete(self, request, conversation_id):
        get_delivery_engine().delete_conversation(conversation_id, request.user)
        return success_response(None, 'Conversation deleted successfully')


class MessageListView(APIView):
    """
    GET  /api/chat/conversations/<id>/messages/?limit=50&cursor=<message id>
         Oldest-first page; `next_cursor` fetches the previous (older) page.
    POST /api/chat/conversations/<id>/messages/  (multipart: content, file, message_type)
    """
    permission_classes = [IsAuthenticated]
    parser_classes = [MultiPartParser, FormParser, JSONParser]

    def get(self, request, conversation_id):
        query = MessagePageQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        limit = query.validated_data['limit']

        messages = get_delivery_engine().list_messages(
            conversation_id,
            limit=limit,
            cursor=query.validated_data['cursor'],
            user_id=request.user.id,
        )
        next_cursor = str(messages[0].id) if len(messages) == limit else None
        return success_response({
            'results': MessageSerializer(messages, many=True, context={'request': request}).data,
            'next_cursor': next_cursor,
        }, 'Messages fetched successfully')

    def post(self, request, conversation_id):
        serializer = SendMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        message = _send(request, conversation_id, serializer.validated_data)
        return success_response(
            MessageSerializer(message, context={'request': request}).data,
            'Message sent successfully',
            status=status.HTTP_201_CREATED,
        )


class DirectMessageView(APIView):
    """
    POST /api/chat/users/<user_id>/messages/
    First-contact send: finds or creates the private conversation with the user.
    """
    permission_classes = [IsAuthenticated]
    parser_classes = [MultiPartParser, FormParser, JSONParser]

    def post(self, request, user_id):
        serializer = SendMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        conversation, _ = get_delivery_engine().find_or_create_conversation(request.user.id, user_id)
        message = _send(request, conversation.id, serializer.validated_data)
        return success_response(
            MessageSerializer(message, context={'request': request}).data,
            'Message sent successfully',
            status=status.HTTP_201_CREATED,
        )


class SupportMessageView(APIView):
    """
    POST /api/chat/support/messages/
    Client message to the admin group; opens the support conversation on first use.
    """
    permission_classes = [IsAuthenticated]
    parser_classes = [MultiPartParser, FormParser, JSONParser]

    def post(self, request):
        serializer = SendMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        message = get_delivery_engine().send_to_admins(
            request.user.id,
            content=data.get('content', ''),
            file=data.get('file'),
            message_type=data.get('message_type'),
        )
        return success_response(
            MessageSerializer(message, context={'request': request}).data,
            'Message sent successfully',
            status=status.HTTP_201_CREATED,
        )


class MessageReadView(APIView):
    """POST /api/chat/messages/<id>/read/"""
    permission_classes = [IsAuthenticated]

    def post(self, request, message_id):
        changed = get_delivery_engine().mark_read(message_id, request.user.id)
        return success_response({'message_id': str(message_id), 'updated': changed}, 'Message marked as read')


class MessageDeliveredView(APIView):
    """POST /api/chat/messages/<id>/delivered/"""
    permission_classes = [IsAuthenticated]

    def post(self, request, message_id):
        changed = get_delivery_engine().acknowledge_delivery(message_id, request.user.id)
        return success_response({'message_id': str(message_id), 'updated': changed}, 'Message marked as delivered')


class ConversationReadView(APIView):
    """POST /api/chat/conversations/<id>/read/ — mark everything I received as read."""
    permission_classes = [IsAuthenticated]

    def post(self, request, conversation_id):
        count = get_delivery_engine().mark_conversation_read(conversation_id, request.user.id)
        return success_response({'updated': count}, 'Conversation marked as read')


def _send(request, conversation_id, data):
    return get_delivery_engine().send_message(
        conversation_id,
        request.user.id,
        content=data.get('content', ''),
        file=data.get('file'),
        message_type=data.get('message_type'),
    )
