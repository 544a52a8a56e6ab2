from django.core.exceptions import ObjectDoesNotExist
from django.db import DatabaseError, IntegrityError
from django.test import SimpleTestCase
from rest_framework import exceptions as drf_exceptions

from .exceptions import (
    Conflict, Forbidden, NotFound, TransientPersistenceFailure,
    envelope_exception_handler, translate_errors,
)


def failing(exc):
    @translate_errors('Operation failed')
    def operation():
        raise exc
    return operation


class TranslateErrorsTests(SimpleTestCase):

    def test_service_errors_pass_through(self):
        with self.assertRaises(Forbidden):
            failing(Forbidden('nope'))()

    def test_missing_row_is_not_found(self):
        with self.assertRaises(NotFound):
            failing(ObjectDoesNotExist())()

    def test_integrity_error_is_conflict(self):
        with self.assertRaises(Conflict):
            failing(IntegrityError('duplicate'))()

    def test_database_error_is_transient(self):
        with self.assertRaises(TransientPersistenceFailure) as ctx:
            failing(DatabaseError('connection reset'))()
        self.assertIsInstance(ctx.exception.__cause__, DatabaseError)

    def test_other_errors_untouched(self):
        with self.assertRaises(KeyError):
            failing(KeyError('x'))()


class EnvelopeExceptionHandlerTests(SimpleTestCase):

    def test_service_error(self):
        response = envelope_exception_handler(Forbidden('Not yours.'), {})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data, {
            'success': False, 'message': 'Not yours.', 'error': 'forbidden', 'data': None,
        })

    def test_drf_validation_error_keeps_field_errors(self):
        response = envelope_exception_handler(drf_exceptions.ValidationError({'content': ['Required.']}), {})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'validation_error')
        self.assertEqual(response.data['errors'], {'content': ['Required.']})

    def test_unexpected_error_hides_detail(self):
        response = envelope_exception_handler(RuntimeError('secret stack detail'), {'view': None})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data['message'], 'Internal server error.')
        self.assertNotIn('secret', str(response.data))
