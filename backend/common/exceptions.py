"""
Error taxonomy shared by the chat, calls and notifications engines.

Engines raise these; the REST layer renders them through
`envelope_exception_handler`, consumers turn them into `error` events and
Celery tasks let them bubble up to the retry machinery.
"""
import functools
import logging

from django.core.exceptions import ObjectDoesNotExist
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError
from django.http import Http404
from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.views import exception_handler

from .responses import error_response

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'error'
    default_message = 'Request failed.'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    code = 'validation_error'
    default_message = 'Invalid input.'


class Unauthenticated(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = 'unauthenticated'
    default_message = 'Authentication failed.'


class Forbidden(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = 'forbidden'
    default_message = 'You are not allowed to perform this action.'


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = 'not_found'
    default_message = 'Resource not found.'


class Conflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = 'conflict'
    default_message = 'The request conflicts with the current state.'


class UpstreamChannelFailure(ServiceError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = 'upstream_channel_failure'
    default_message = 'Delivery channel failed.'


class TransientPersistenceFailure(ServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = 'transient_persistence_failure'
    default_message = 'Storage is temporarily unavailable. Please retry.'


def translate_errors(message):
    """
    Wrap an engine operation so raw failures come out as taxonomy errors.

    ServiceError passes through untouched. Missing rows become NotFound,
    malformed ids ValidationError, constraint violations Conflict and any
    other database failure TransientPersistenceFailure. The original
    exception is chained.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ServiceError:
                raise
            except ObjectDoesNotExist as exc:
                raise NotFound(message) from exc
            except DjangoValidationError as exc:
                raise ValidationError('; '.join(exc.messages)) from exc
            except IntegrityError as exc:
                logger.warning(f'{message}: integrity error in {func.__qualname__}: {exc}')
                raise Conflict(message) from exc
            except DatabaseError as exc:
                logger.error(f'{message}: database error in {func.__qualname__}: {exc}')
                raise TransientPersistenceFailure() from exc
        return wrapper
    return decorator


def envelope_exception_handler(exc, context):
    """DRF EXCEPTION_HANDLER rendering every failure as the uniform envelope."""
    if isinstance(exc, ServiceError):
        return error_response(exc.message, code=exc.code, status=exc.status_code)

    if isinstance(exc, (Http404, ObjectDoesNotExist)):
        return error_response(NotFound.default_message, code=NotFound.code, status=status.HTTP_404_NOT_FOUND)

    response = exception_handler(exc, context)
    if response is not None:
        if isinstance(exc, drf_exceptions.ValidationError):
            return error_response(
                'Invalid input.',
                code=ValidationError.code,
                status=response.status_code,
                errors=response.data,
            )
        detail = response.data.get('detail') if isinstance(response.data, dict) else None
        code = getattr(detail, 'code', None) or 'error'
        return error_response(str(detail or 'Request failed.'), code=code, status=response.status_code)

    view = context.get('view')
    if isinstance(exc, DatabaseError):
        logger.error(f'Database error in {view.__class__.__name__}: {exc}')
        return error_response(
            TransientPersistenceFailure.default_message,
            code=TransientPersistenceFailure.code,
            status=TransientPersistenceFailure.status_code,
        )
    logger.exception(f'Unhandled error in {view.__class__.__name__}: {exc}')
    return error_response('Internal server error.', code='server_error', status=status.HTTP_500_INTERNAL_SERVER_ERROR)
