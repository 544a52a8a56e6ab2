from django.db.models import Q
from rest_framework.views import APIView
from rest_framework.permissions import IsAuthenticated
from rest_framework.pagination import CursorPagination

from common.exceptions import NotFound
from common.responses import success_response
from .models import Call, CallParticipant, ICEServer
from .serializers import CallSerializer, CallLogSerializer


class CallLogPagination(CursorPagination):
    page_size = 30
    ordering = '-created_at'


def _my_calls(user):
    return Call.objects.filter(
        Q(initiated_by=user) | Q(participants__user=user)
    ).select_related('initiated_by').prefetch_related(
        'participants__user'
    ).distinct()


class CallLogView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        """
        Get call history for current user.
        Filters: ?type=audio|video, ?status=missed|received|made
        """
        calls = _my_calls(request.user).order_by('-created_at')

        call_type = request.query_params.get('type')
        if call_type in ('audio', 'video'):
            calls = calls.filter(call_type=call_type)

        status_filter = request.query_params.get('status')
        if status_filter == 'missed':
            calls = calls.filter(participants__user=request.user, participants__status=CallParticipant.MISSED)
        elif status_filter == 'received':
            calls = calls.filter(
                participants__user=request.user,
                participants__status__in=[CallParticipant.JOINED, CallParticipant.LEFT],
            )
        elif status_filter == 'made':
            calls = calls.filter(initiated_by=request.user)

        paginator = CallLogPagination()
        page = paginator.paginate_queryset(calls, request)
        serializer = CallLogSerializer(page, many=True, context={'request': request})
        return success_response({
            'results': serializer.data,
            'next': paginator.get_next_link(),
            'previous': paginator.get_previous_link(),
        }, 'Call log fetched successfully')


class CallDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, call_id):
        """Get details of a specific call"""
        call = _my_calls(request.user).filter(id=call_id).first()
        if call is None:
            raise NotFound('Call not found.')
        serializer = CallSerializer(call, context={'request': request})
        return success_response(serializer.data, 'Call fetched successfully')


class ICEServersView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        """Get STUN/TURN server configuration for WebRTC"""
        return success_response({'ice_servers': ICEServer.webrtc_config()}, 'ICE servers fetched successfully')


class MissedCallsCountView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        """Get count of missed calls"""
        count = CallParticipant.objects.filter(
            user=request.user,
            status=CallParticipant.MISSED,
            call__status=Call.ENDED,
        ).count()
        return success_response({'missed_calls': count})
