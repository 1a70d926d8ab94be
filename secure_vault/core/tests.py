import json
import logging
import tempfile
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

from django.contrib.auth.models import AnonymousUser
from django.core.cache import cache
from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase, override_settings

from core import views as core_views
from core.audit import TamperEvidentAuditLogger
from core.http import api_login_required, no_store
from core.logging_formatters import StructuredJSONFormatter
from core.logging_utils import REDACTED_VALUE, AppLogger, redact
from core.middleware import (
    LoggingMiddleware,
    RateLimitMiddleware,
    RequestContextFilter,
    _request_context,
    get_client_ip,
    get_request_context,
)
from core.rate_limit import (
    RateLimitScenario,
    increment_rate_limit,
    is_rate_limited,
    reset_rate_limit,
)
from core.security_controls import RevealRateMonitor


class AppLoggerTests(SimpleTestCase):
    def setUp(self):
        self.logger = AppLogger('core.tests')
        self.user = SimpleNamespace(email='user@example.com', pk='0d5c')

    def test_info_logs_formatted_message_with_user_and_extra(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Test message', user=self.user, extra_data={'ip': '127.0.0.1', 'action': 'view'})
        self.assertEqual(len(captured.output), 1)
        self.assertIn('[User: user@example.com] Test message', captured.output[0])
        self.assertIn('ip: 127.0.0.1', captured.output[0])
        self.assertIn('action: view', captured.output[0])

    def test_secret_keys_are_redacted_from_messages(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Submitted', extra_data={'code': '482913', 'item_id': 'abc'})
        self.assertNotIn('482913', captured.output[0])
        self.assertIn(f'code: {REDACTED_VALUE}', captured.output[0])
        self.assertIn('item_id: abc', captured.output[0])

    def test_redact_leaves_input_untouched(self):
        original = {'Password': 'hunter2', 'ip': '1.2.3.4'}
        cleaned = redact(original)
        self.assertEqual(cleaned['Password'], REDACTED_VALUE)
        self.assertEqual(original['Password'], 'hunter2')
        self.assertIsNone(redact(None))

    def test_security_event_uses_security_logger(self):
        with self.assertLogs('django.security', level='WARNING') as captured:
            self.logger.security_event('Suspicious activity', user=self.user)
        self.assertIn('SECURITY EVENT: Suspicious activity', captured.output[0])

    def test_critical_logs_to_alerts_logger(self):
        with self.assertLogs('alerts', level='ERROR') as alerts_log, self.assertLogs(
            'core.tests', level='CRITICAL'
        ) as core_log:
            self.logger.critical('Critical failure detected')
        self.assertTrue(any('CRITICAL: Critical failure detected' in entry for entry in alerts_log.output))
        self.assertTrue(any('Critical failure detected' in entry for entry in core_log.output))

    def test_encryption_event_logs_success_and_failure(self):
        with self.assertLogs('core.tests', level='INFO') as success_log:
            self.logger.encryption_event('note sealed', user=self.user, success=True)
        self.assertTrue(any('ENCRYPTION SUCCESS: note sealed' in entry for entry in success_log.output))

        with self.assertLogs('core.tests', level='ERROR') as failure_log:
            self.logger.encryption_event('note unreadable', user=self.user, success=False)
        self.assertTrue(any('ENCRYPTION FAILURE: note unreadable' in entry for entry in failure_log.output))

    def test_failed_verification_is_also_a_security_event(self):
        with self.assertLogs('django.security', level='WARNING') as security_log, self.assertLogs(
            'core.tests', level='WARNING'
        ) as app_log:
            self.logger.verification_event('reveal_code_submitted', self.user, success=False)
        self.assertIn('VERIFICATION FAILED: reveal_code_submitted', app_log.output[0])
        self.assertIn('Verification failed: reveal_code_submitted', security_log.output[0])

    def test_user_activity_includes_email_and_action(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.user_activity('login', self.user, details='via Google')
        self.assertIn('User user@example.com performed action: login - via Google', captured.output[0])


class StructuredJSONFormatterTests(SimpleTestCase):
    def test_context_and_request_attributes_are_serialised(self):
        record = logging.LogRecord('vault', logging.INFO, __file__, 10, 'hello', (), None)
        record.request_id = 'req-9'
        record.context = {'user_pk': 'abc', 'request_id': 'other'}

        payload = json.loads(StructuredJSONFormatter().format(record))

        self.assertEqual(payload['message'], 'hello')
        self.assertEqual(payload['request_id'], 'req-9')
        self.assertEqual(payload['context_request_id'], 'other')
        self.assertEqual(payload['user_pk'], 'abc')


class MiddlewareTests(SimpleTestCase):
    def test_get_client_ip_ignores_forwarded_header_from_untrusted_peer(self):
        request = SimpleNamespace(META={'HTTP_X_FORWARDED_FOR': '203.0.113.10', 'REMOTE_ADDR': '198.51.100.5'})
        self.assertEqual(get_client_ip(request), '198.51.100.5')

    @override_settings(TRUSTED_PROXY_IPS=['10.0.0.0/8'])
    def test_get_client_ip_uses_forwarded_header_behind_trusted_proxy(self):
        request = SimpleNamespace(
            META={'HTTP_X_FORWARDED_FOR': 'unknown, 203.0.113.1', 'REMOTE_ADDR': '10.1.2.3'}
        )
        self.assertEqual(get_client_ip(request), '203.0.113.1')

    def test_get_client_ip_without_address(self):
        self.assertEqual(get_client_ip(SimpleNamespace(META={})), 'unknown')

    def test_request_context_filter_adds_context_information(self):
        token = _request_context.set({
            'user_id': '42',
            'ip': '192.0.2.55',
            'request_id': 'req-1',
            'method': 'GET',
            'path': '/test/',
        })
        try:
            record = logging.LogRecord('test', logging.INFO, __file__, 10, 'msg', (), None)
            RequestContextFilter().filter(record)
            self.assertEqual(record.user_id, '42')
            self.assertEqual(record.ip, '192.0.2.55')
            self.assertEqual(record.request_id, 'req-1')
            self.assertEqual(record.http_method, 'GET')
            self.assertEqual(record.path, '/test/')
        finally:
            _request_context.reset(token)

    def test_logging_middleware_populates_and_cleans_context(self):
        request = RequestFactory().get('/vault/notes/', REMOTE_ADDR='198.51.100.7')
        request.user = SimpleNamespace(is_authenticated=True, pk='7')
        captured_state = {}

        def get_response(request):
            captured_state['context'] = get_request_context().copy()
            return HttpResponse('ok')

        response = LoggingMiddleware(get_response)(request)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(request.request_id, response.headers['X-Request-ID'])
        self.assertEqual(captured_state['context']['request_id'], response.headers['X-Request-ID'])
        self.assertEqual(captured_state['context']['user_id'], '7')
        self.assertEqual(captured_state['context']['ip'], '198.51.100.7')
        self.assertEqual(captured_state['context']['method'], 'GET')
        self.assertEqual(captured_state['context']['path'], '/vault/notes/')
        self.assertEqual(get_request_context(), {})


class RateLimitTests(SimpleTestCase):
    def setUp(self):
        cache.clear()

    def test_identifier_is_blocked_after_limit(self):
        for _ in range(3):
            self.assertTrue(increment_rate_limit('test', 'user-1', limit=3, window=60).allowed)

        result = increment_rate_limit('test', 'user-1', limit=3, window=60, block=120)

        self.assertFalse(result.allowed)
        self.assertTrue(result.blocked)
        self.assertTrue(is_rate_limited('test', 'user-1').blocked)
        self.assertFalse(is_rate_limited('test', 'user-2').blocked)

    def test_reset_clears_block(self):
        for _ in range(3):
            increment_rate_limit('test', 'User-1', limit=2, window=60)
        reset_rate_limit('test', 'user-1')
        self.assertFalse(is_rate_limited('test', 'user-1').blocked)

    def test_missing_identifier_is_never_limited(self):
        self.assertTrue(increment_rate_limit('test', None, limit=0, window=60).allowed)
        self.assertFalse(is_rate_limited('test', '').blocked)


class RateLimitMiddlewareTests(SimpleTestCase):
    def setUp(self):
        cache.clear()
        self.factory = RequestFactory()
        self.middleware = RateLimitMiddleware(lambda request: HttpResponse('ok'))

    def test_blocked_login_returns_429(self):
        for _ in range(7):
            increment_rate_limit(RateLimitScenario.LOGIN_EMAIL, 'user@example.com', limit=6, window=600)

        request = self.factory.post('/accounts/login/', {'login': 'User@Example.com'}, REMOTE_ADDR='192.0.2.1')
        response = self.middleware(request)

        self.assertEqual(response.status_code, 429)

    def test_repeated_probing_is_blocked(self):
        statuses = [
            self.middleware(self.factory.get('/.env', REMOTE_ADDR='192.0.2.9')).status_code
            for _ in range(4)
        ]
        self.assertEqual(statuses[:3], [200, 200, 200])
        self.assertEqual(statuses[3], 429)

    def test_password_reset_is_throttled_per_email(self):
        def post():
            return self.middleware(self.factory.post(
                '/accounts/password/reset/', {'email': 'a@example.com'}, REMOTE_ADDR='192.0.2.10',
            ))

        self.assertEqual(post().status_code, 200)
        self.assertEqual(post().status_code, 200)
        self.assertEqual(post().status_code, 429)


class AuditLoggerTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = Path(self.tmp.name) / 'audit.log'

    def test_chain_verifies_and_detects_tampering(self):
        audit = TamperEvidentAuditLogger(self.path, hmac_key=b'k' * 32)
        audit.log_event('account_deleted', user_id='u1', metadata={'steps': 6})
        audit.log_event('account_deletion_incomplete', severity='WARNING', user_id='u2')
        self.assertTrue(audit.verify_chain())

        lines = self.path.read_text().splitlines()
        entry = json.loads(lines[0])
        entry['user_id'] = 'someone-else'
        lines[0] = json.dumps(entry, sort_keys=True)
        self.path.write_text('\n'.join(lines) + '\n')

        self.assertFalse(audit.verify_chain())

    def test_chain_continues_across_instances(self):
        TamperEvidentAuditLogger(self.path, hmac_key=b'k' * 32).log_event('first')
        second = TamperEvidentAuditLogger(self.path, hmac_key=b'k' * 32)
        second.log_event('second')
        self.assertTrue(second.verify_chain())


class RevealRateMonitorTests(SimpleTestCase):
    def test_threshold_exceeded_is_reported(self):
        monitor = RevealRateMonitor(threshold=2, window_seconds=60)
        self.assertFalse(monitor.record('u1'))
        self.assertFalse(monitor.record('u1'))
        with self.assertLogs('django.security', level='WARNING'):
            self.assertTrue(monitor.record('u1'))
        self.assertFalse(monitor.record('u2'))


class HttpHelperTests(SimpleTestCase):
    def test_anonymous_api_call_gets_json_401(self):
        view = api_login_required(lambda request: HttpResponse('secret'))
        request = RequestFactory().get('/vault/passwords/')
        request.user = AnonymousUser()

        response = view(request)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(json.loads(response.content), {'error': 'Not authenticated'})

    def test_no_store_sets_cache_headers(self):
        response = no_store(HttpResponse('x'))
        self.assertEqual(response['Cache-Control'], 'no-store, private')


class CoreViewTests(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()

    def test_home_reports_session_state(self):
        request = self.factory.get('/home/')
        request.user = SimpleNamespace(is_authenticated=True, email='user@example.com')

        with patch.object(core_views, 'logger') as mock_logger:
            response = core_views.home(request)

        mock_logger.info.assert_called_once()
        mock_logger.user_activity.assert_called_once()
        self.assertEqual(json.loads(response.content), {'authenticated': True, 'user_email': 'user@example.com'})

    def test_root_redirects_to_home(self):
        request = self.factory.get('/')

        with patch.object(core_views, 'logger') as mock_logger:
            response = core_views.root(request)

        mock_logger.info.assert_called_once()
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.url, '/home/')
