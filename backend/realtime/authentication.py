"""
Handshake authentication for websocket connections.

The access token is read from the `Authorization: Bearer <token>` header or,
for browsers that cannot set headers on a websocket, the `token` query param.
"""
import logging
from urllib.parse import parse_qs

from django.contrib.auth import get_user_model
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.tokens import AccessToken

from common.exceptions import Unauthenticated

logger = logging.getLogger(__name__)


class MissingCredential(Unauthenticated):
    code = 'missing_credential'
    default_message = 'Authentication token is required.'


class MalformedCredential(Unauthenticated):
    code = 'malformed_credential'
    default_message = 'Authentication token is malformed.'


class ExpiredOrInvalidSignature(Unauthenticated):
    code = 'invalid_token'
    default_message = 'Authentication token is expired or invalid.'


class UserNotFound(Unauthenticated):
    code = 'user_not_found'
    default_message = 'User not found.'


class UserInactive(Unauthenticated):
    code = 'user_inactive'
    default_message = 'User account is disabled.'


def extract_token(scope):
    """Return the raw token from the handshake scope, or None."""
    for name, value in scope.get('headers', []):
        if name == b'authorization':
            parts = value.decode('latin-1').split()
            if len(parts) == 2 and parts[0] in api_settings.AUTH_HEADER_TYPES:
                return parts[1]
            # Header present but not "Bearer <token>"
            return value.decode('latin-1')

    query = parse_qs(scope.get('query_string', b'').decode())
    token = query.get('token', [None])[0]
    return token or None


def verify_token(raw_token):
    """Check signature and expiry; return the subject (user id)."""
    if not raw_token:
        raise MissingCredential()
    if raw_token.count('.') != 2:
        raise MalformedCredential()
    try:
        token = AccessToken(raw_token)
    except TokenError as exc:
        raise ExpiredOrInvalidSignature() from exc
    try:
        return token[api_settings.USER_ID_CLAIM]
    except KeyError as exc:
        raise MalformedCredential('Authentication token has no subject.') from exc


def resolve_user(user_id):
    User = get_user_model()
    user = User.objects.filter(**{api_settings.USER_ID_FIELD: user_id}).first()
    if user is None:
        raise UserNotFound()
    if not user.is_active:
        raise UserInactive()
    return user


def authenticate_scope(scope):
    """
    Resolve the connecting user from a websocket scope.
    Raises one of the Unauthenticated subclasses above on failure.
    Blocking: call through database_sync_to_async from consumers.
    """
    user = resolve_user(verify_token(extract_token(scope)))
    logger.debug(f'Websocket handshake authenticated user {user.id}')
    return user
