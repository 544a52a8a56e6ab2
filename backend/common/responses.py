from rest_framework import status as http_status
from rest_framework.response import Response


def success_response(data=None, message='', status=http_status.HTTP_200_OK):
    return Response({'success': True, 'message': message, 'data': data}, status=status)


def error_response(message, code='error', status=http_status.HTTP_400_BAD_REQUEST, errors=None):
    body = {'success': False, 'message': message, 'error': code, 'data': None}
    if errors is not None:
        body['errors'] = errors
    return Response(body, status=status)
