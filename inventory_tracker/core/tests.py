from types import SimpleNamespace
import json
import logging
import sys

from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase

from core.logging_formatters import StructuredJSONFormatter
from core.logging_utils import AppLogger
from core.middleware import (
    LoggingMiddleware,
    RequestContextFilter,
    _request_context,
    get_client_ip,
    get_request_context,
)


class AppLoggerTests(SimpleTestCase):
    def setUp(self):
        self.logger = AppLogger('core.tests')

    def test_info_logs_formatted_message_with_place_and_extra(self):
        extra = {'stage': 'items', 'changed': 3}
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Stage finished', 'place-1', extra_data=extra)
        self.assertEqual(len(captured.output), 1)
        logged_message = captured.output[0]
        self.assertIn('[Place: place-1] Stage finished', logged_message)
        self.assertIn('stage: items', logged_message)
        self.assertIn('changed: 3', logged_message)

    def test_context_is_attached_to_record(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Stage finished', 'place-1', extra_data={'changed': 3})
        self.assertEqual(captured.records[0].context, {'place_id': 'place-1', 'changed': 3})

    def test_message_without_place_has_no_prefix(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Plain message')
        self.assertTrue(captured.output[0].endswith(':Plain message'))
        self.assertFalse(hasattr(captured.records[0], 'context'))

    def test_security_event_uses_security_logger(self):
        with self.assertLogs('inventory.security', level='WARNING') as captured:
            self.logger.security_event('place key created', 'place-1')
        self.assertEqual(len(captured.output), 1)
        self.assertIn('SECURITY EVENT: place key created', captured.output[0])

    def test_critical_logs_to_alerts_logger(self):
        with self.assertLogs('alerts', level='ERROR') as alerts_log, self.assertLogs(
            'core.tests', level='CRITICAL'
        ) as core_log:
            self.logger.critical('Encryption migration aborted')
        self.assertTrue(any('CRITICAL: Encryption migration aborted' in entry for entry in alerts_log.output))
        self.assertTrue(any('Encryption migration aborted' in entry for entry in core_log.output))

    def test_encryption_event_logs_success_and_failure(self):
        with self.assertLogs('core.tests', level='INFO') as success_log:
            self.logger.encryption_event('place created with new key', 'place-1')
        self.assertTrue(any('ENCRYPTION SUCCESS: place created with new key' in entry for entry in success_log.output))

        with self.assertLogs('core.tests', level='WARNING') as failure_log:
            self.logger.encryption_event('value could not be decrypted', 'place-1', success=False)
        self.assertTrue(any('ENCRYPTION FAILURE: value could not be decrypted' in entry for entry in failure_log.output))


class StructuredJSONFormatterTests(SimpleTestCase):
    def _record(self, **attrs):
        record = logging.LogRecord('inventory.crypto', logging.WARNING, __file__, 10, 'decrypt failed', (), None)
        for name, value in attrs.items():
            setattr(record, name, value)
        return record

    def test_formats_base_fields_and_request_attributes(self):
        record = self._record(request_id='req-1', user_id='7', ip='192.0.2.1', path='/metrics')

        payload = json.loads(StructuredJSONFormatter().format(record))

        self.assertEqual(payload['level'], 'WARNING')
        self.assertEqual(payload['logger'], 'inventory.crypto')
        self.assertEqual(payload['message'], 'decrypt failed')
        self.assertEqual(payload['request_id'], 'req-1')
        self.assertEqual(payload['path'], '/metrics')
        self.assertNotIn('http_method', payload)
        self.assertIn('timestamp', payload)

    def test_context_is_merged_without_overwriting_base_fields(self):
        record = self._record(context={'place_id': 'place-1', 'level': 'custom'})

        payload = json.loads(StructuredJSONFormatter().format(record))

        self.assertEqual(payload['place_id'], 'place-1')
        self.assertEqual(payload['level'], 'WARNING')
        self.assertEqual(payload['context_level'], 'custom')

    def test_exception_information_is_included(self):
        try:
            raise ValueError('bad payload')
        except ValueError:
            record = logging.LogRecord('inventory', logging.ERROR, __file__, 10, 'failed', (), sys.exc_info())

        payload = json.loads(StructuredJSONFormatter().format(record))

        self.assertIn('ValueError: bad payload', payload['exc_info'])


class MiddlewareTests(SimpleTestCase):
    def test_get_client_ip_prefers_forwarded_header(self):
        request = SimpleNamespace(META={'HTTP_X_FORWARDED_FOR': '203.0.113.10, 10.0.0.1'})
        self.assertEqual(get_client_ip(request), '203.0.113.10')

    def test_get_client_ip_falls_back_to_remote_addr(self):
        request = SimpleNamespace(META={'REMOTE_ADDR': '198.51.100.5'})
        self.assertEqual(get_client_ip(request), '198.51.100.5')

    def test_get_client_ip_skips_unknown_entries(self):
        request = SimpleNamespace(
            META={'HTTP_X_FORWARDED_FOR': 'unknown, ::ffff:203.0.113.1', 'REMOTE_ADDR': '198.51.100.5'}
        )
        self.assertEqual(get_client_ip(request), '203.0.113.1')

    def test_get_client_ip_without_address(self):
        self.assertEqual(get_client_ip(SimpleNamespace(META={})), 'unknown')

    def test_request_context_filter_adds_context_information(self):
        token = _request_context.set(
            {
                'user_id': '42',
                'ip': '192.0.2.55',
                'request_id': 'req-1',
                'method': 'POST',
                'path': '/metrics',
            }
        )
        try:
            record = logging.LogRecord('test', logging.INFO, __file__, 10, 'msg', (), None)
            self.assertTrue(RequestContextFilter().filter(record))
            self.assertEqual(record.user_id, '42')
            self.assertEqual(record.ip, '192.0.2.55')
            self.assertEqual(record.request_id, 'req-1')
            self.assertEqual(record.http_method, 'POST')
            self.assertEqual(record.path, '/metrics')
        finally:
            _request_context.reset(token)

    def test_request_context_filter_defaults_outside_requests(self):
        record = logging.LogRecord('test', logging.INFO, __file__, 10, 'msg', (), None)
        RequestContextFilter().filter(record)
        self.assertIsNone(record.request_id)
        self.assertEqual(record.user_id, 'anonymous')
        self.assertEqual(record.ip, 'unknown')

    def test_logging_middleware_populates_and_cleans_context(self):
        factory = RequestFactory()
        request = factory.get('/metrics', HTTP_X_FORWARDED_FOR='198.51.100.7')
        request.user = SimpleNamespace(is_authenticated=True, id=7)

        captured_state = {}

        def get_response(request):
            captured_state['context'] = get_request_context().copy()
            return HttpResponse('ok')

        response = LoggingMiddleware(get_response)(request)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(request.request_id, response.headers['X-Request-ID'])
        self.assertEqual(captured_state['context']['request_id'], request.request_id)
        self.assertEqual(captured_state['context']['user_id'], '7')
        self.assertEqual(captured_state['context']['ip'], '198.51.100.7')
        self.assertEqual(captured_state['context']['method'], 'GET')
        self.assertEqual(captured_state['context']['path'], '/metrics')
        self.assertEqual(get_request_context(), {})

    def test_logging_middleware_marks_anonymous_users(self):
        request = RequestFactory().get('/metrics')
        request.user = SimpleNamespace(is_authenticated=False)
        captured_state = {}

        def get_response(request):
            captured_state['user_id'] = get_request_context()['user_id']
            return HttpResponse('ok')

        LoggingMiddleware(get_response)(request)

        self.assertEqual(captured_state['user_id'], 'anonymous')
