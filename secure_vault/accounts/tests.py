from io import StringIO
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from allauth.account.models import EmailAddress
from django.conf import settings
from django.contrib.auth import get_user_model
from django.contrib.messages.storage.fallback import FallbackStorage
from django.contrib.sessions.middleware import SessionMiddleware
from django.contrib.sites.models import Site
from django.core import management
from django.core.cache import cache
from django.db import DatabaseError
from django.test import Client, RequestFactory, SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from accounts import signals, views
from accounts.deletion import (
    DELETION_FAILED_MESSAGE,
    INCORRECT_PASSWORD_MESSAGE,
    NO_CODE_MESSAGE,
    SESSION_CODE_KEY as DELETION_CODE_KEY,
    AccountDeletionFlow,
    AccountDeletionService,
    DeletionStage,
)
from accounts.exceptions import AccountDeletionError, GateStateError
from accounts.models import UserProfile
from accounts.one_time_code import OneTimeCodeService, generate_code
from accounts.verification import (
    INVALID_CODE_MESSAGE,
    SESSION_CODE_KEY as REVEAL_CODE_KEY,
    GateState,
    RevealGate,
    VerificationSession,
)
from core.rate_limit import RateLimitScenario, is_rate_limited
from vault.codec import seal
from vault.exceptions import DecryptionError, ObjectStoreError
from vault.models import Note, PasswordEntry, StoredFile
from vault.object_storage import BaseObjectStore, InMemoryObjectStore, reset_object_store

FAST_CRYPTO = {
    'VAULT_CODEC_ITERATIONS': 1000,
    'PASSWORD_HASHERS': ['django.contrib.auth.hashers.MD5PasswordHasher'],
}

PASSWORD = 'correct horse battery'


def _other_code(code):
    return '000000' if code != '000000' else '111111'


class OneTimeCodeTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(email='user@example.com', password=PASSWORD)

    def test_generated_codes_are_six_digits_without_leading_zero(self):
        for _ in range(300):
            code = generate_code()
            self.assertEqual(len(code), 6)
            self.assertTrue(code.isdigit())
            self.assertTrue(100000 <= int(code) <= 999999)

    def test_generate_code_covers_full_range(self):
        with patch('accounts.one_time_code.secrets.randbelow', return_value=0):
            self.assertEqual(generate_code(), '100000')
        with patch('accounts.one_time_code.secrets.randbelow', return_value=899999):
            self.assertEqual(generate_code(), '999999')

    @override_settings(**FAST_CRYPTO)
    def test_ensure_profile_seals_code_and_never_rotates(self):
        profile = OneTimeCodeService.ensure_profile(self.user)
        code = OneTimeCodeService.get_code(self.user)

        self.assertRegex(code, r'^[1-9]\d{5}$')
        self.assertNotEqual(profile.one_time_code, code)
        self.assertFalse(profile.code_shown)
        self.assertIsNotNone(profile.code_generated_at)

        again = OneTimeCodeService.ensure_profile(self.user)
        self.assertEqual(again.one_time_code, profile.one_time_code)
        self.assertEqual(OneTimeCodeService.get_code(self.user), code)

    @override_settings(**FAST_CRYPTO)
    def test_pending_display_until_marked_shown(self):
        OneTimeCodeService.ensure_profile(self.user)
        code = OneTimeCodeService.get_code(self.user)

        self.assertEqual(OneTimeCodeService.pending_display(self.user), code)
        self.assertTrue(OneTimeCodeService.mark_shown(self.user))
        self.assertIsNone(OneTimeCodeService.pending_display(self.user))
        self.assertEqual(OneTimeCodeService.get_code(self.user), code)

    def test_missing_profile(self):
        self.assertIsNone(OneTimeCodeService.get_code(self.user))
        self.assertIsNone(OneTimeCodeService.pending_display(self.user))
        self.assertFalse(OneTimeCodeService.mark_shown(self.user))

    @override_settings(**FAST_CRYPTO)
    def test_code_sealed_for_another_identity_is_unreadable(self):
        UserProfile.objects.create(user=self.user, one_time_code=seal('123456', 'someone-else'))
        with self.assertRaises(DecryptionError):
            OneTimeCodeService.get_code(self.user)


class RevealGateTests(SimpleTestCase):
    def setUp(self):
        self.gate = RevealGate(item_id='p1')

    def test_wrong_then_right_code(self):
        self.gate.request_reveal()
        self.assertEqual(self.gate.state, GateState.AWAITING_CODE)

        self.assertFalse(self.gate.submit_code('000000', '482913'))
        self.assertEqual(self.gate.state, GateState.AWAITING_CODE)
        self.assertEqual(self.gate.error, INVALID_CODE_MESSAGE)

        self.assertTrue(self.gate.submit_code('482913', '482913'))
        self.assertEqual(self.gate.state, GateState.REVEALED)
        self.assertIsNone(self.gate.error)

    def test_error_is_set_on_every_wrong_attempt(self):
        self.gate.request_reveal()
        for attempt in ('1', '2', '3'):
            self.assertFalse(self.gate.submit_code(attempt, '482913'))
            self.assertEqual(self.gate.error, INVALID_CODE_MESSAGE)

    def test_comparison_is_exact(self):
        self.gate.request_reveal()
        for attempt in (' 482913', '482913 ', '482913\n', ''):
            self.assertFalse(self.gate.submit_code(attempt, '482913'))
        self.assertEqual(self.gate.state, GateState.AWAITING_CODE)

    def test_missing_expected_code_never_matches(self):
        self.gate.request_reveal()
        self.assertFalse(self.gate.submit_code('482913', None))
        self.assertFalse(self.gate.submit_code('', ''))
        self.assertEqual(self.gate.error, INVALID_CODE_MESSAGE)

    def test_cancel_returns_to_hidden_and_clears_error(self):
        self.gate.request_reveal()
        self.gate.submit_code('nope', '482913')
        self.gate.cancel()
        self.assertEqual(self.gate.state, GateState.HIDDEN)
        self.assertIsNone(self.gate.error)

    def test_hide_is_idempotent_and_reveal_requires_code_again(self):
        self.gate.hide()
        self.assertEqual(self.gate.state, GateState.HIDDEN)

        self.gate.request_reveal()
        self.gate.submit_code('482913', '482913')
        self.gate.hide()
        self.gate.hide()
        self.assertEqual(self.gate.state, GateState.HIDDEN)

        self.gate.request_reveal()
        self.assertEqual(self.gate.state, GateState.AWAITING_CODE)

    def test_request_reveal_is_a_noop_outside_hidden(self):
        self.gate.request_reveal()
        self.gate.submit_code('x', '482913')
        self.gate.request_reveal()
        self.assertEqual(self.gate.state, GateState.AWAITING_CODE)
        self.assertEqual(self.gate.error, INVALID_CODE_MESSAGE)

        self.gate.submit_code('482913', '482913')
        self.gate.request_reveal()
        self.assertEqual(self.gate.state, GateState.REVEALED)

    def test_submit_outside_awaiting_code_raises(self):
        with self.assertRaises(GateStateError):
            self.gate.submit_code('482913', '482913')

        self.gate.request_reveal()
        self.gate.submit_code('482913', '482913')
        with self.assertRaises(GateStateError):
            self.gate.submit_code('482913', '482913')

    def test_toggle(self):
        self.gate.toggle()
        self.assertEqual(self.gate.state, GateState.AWAITING_CODE)
        self.gate.submit_code('482913', '482913')
        self.gate.toggle()
        self.assertEqual(self.gate.state, GateState.HIDDEN)

    def test_from_dict_rejects_unknown_state(self):
        restored = RevealGate.from_dict({'item_id': 'p1', 'state': 'bogus'})
        self.assertEqual(restored.state, GateState.HIDDEN)
        self.assertEqual(RevealGate.from_dict(self.gate.to_dict()), self.gate)


@override_settings(**FAST_CRYPTO)
class VerificationSessionTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = get_user_model().objects.create_user(email='user@example.com', password=PASSWORD)
        OneTimeCodeService.ensure_profile(self.user)
        self.code = OneTimeCodeService.get_code(self.user)
        self.session = {}
        self.verification = VerificationSession(self.session, self.user)

    def test_gates_are_independent_per_item(self):
        self.verification.request_reveal('a')
        self.verification.request_reveal('b')

        self.verification.submit_code('a', self.code)

        self.assertEqual(self.verification.gate('a').state, GateState.REVEALED)
        self.assertEqual(self.verification.gate('b').state, GateState.AWAITING_CODE)
        self.assertEqual(self.verification.gate('c').state, GateState.HIDDEN)
        self.assertEqual(self.verification.revealed_ids(), ['a'])

    def test_code_is_cached_sealed_in_session(self):
        self.assertEqual(self.verification.expected_code(), self.code)
        self.assertIn(REVEAL_CODE_KEY, self.session)
        self.assertNotEqual(self.session[REVEAL_CODE_KEY], self.code)

    def test_gates_never_rotate_the_code(self):
        self.verification.request_reveal('a')
        self.verification.submit_code('a', _other_code(self.code))
        self.verification.submit_code('a', self.code)
        self.verification.hide('a')
        self.assertEqual(OneTimeCodeService.get_code(self.user), self.code)

    def test_retries_are_unlimited_by_default(self):
        self.verification.request_reveal('a')
        for _ in range(25):
            gate = self.verification.submit_code('a', _other_code(self.code))
            self.assertEqual(gate.error, INVALID_CODE_MESSAGE)
        self.assertTrue(self.verification.submit_code('a', self.code).is_revealed)

    @override_settings(VAULT_REVEAL_MAX_ATTEMPTS=2, VAULT_REVEAL_LOCKOUT_SECONDS=60)
    def test_lockout_when_attempt_limit_configured(self):
        self.verification.request_reveal('a')
        wrong = _other_code(self.code)
        self.verification.submit_code('a', wrong)
        self.verification.submit_code('a', wrong)
        gate = self.verification.submit_code('a', wrong)
        self.assertTrue(gate.error.startswith('Too many invalid codes'))

        gate = self.verification.submit_code('a', self.code)
        self.assertEqual(gate.state, GateState.AWAITING_CODE)
        self.assertTrue(is_rate_limited(RateLimitScenario.REVEAL_CODE_USER, str(self.user.pk)).blocked)

    @override_settings(VAULT_REVEAL_MAX_ATTEMPTS=2, VAULT_REVEAL_LOCKOUT_SECONDS=60)
    def test_correct_code_resets_attempt_limit(self):
        wrong = _other_code(self.code)
        self.verification.request_reveal('a')
        self.verification.submit_code('a', wrong)
        self.verification.submit_code('a', self.code)

        self.verification.request_reveal('b')
        self.verification.submit_code('b', wrong)
        gate = self.verification.submit_code('b', wrong)
        self.assertEqual(gate.error, INVALID_CODE_MESSAGE)

    def test_forget_and_clear(self):
        self.verification.request_reveal('a')
        self.verification.request_reveal('b')
        self.verification.forget('a')
        self.assertEqual(self.verification.gate('a').state, GateState.HIDDEN)

        self.verification.clear()
        self.assertNotIn(REVEAL_CODE_KEY, self.session)
        self.assertEqual(self.verification.gate('b').state, GateState.HIDDEN)

    def test_submit_without_request_raises(self):
        with self.assertRaises(GateStateError):
            self.verification.submit_code('a', self.code)


def _seed_vault(user, store):
    key = str(user.pk)
    PasswordEntry.objects.create(user=user, title='Mail', username='me', password=seal('pw', key))
    Note.objects.create(user=user, title='Diary', content=seal('dear diary', key))
    path = f"{user.pk}/scan.pdf"
    StoredFile.objects.create(user=user, name='scan.pdf', path=path, size=3)
    store.upload(path, b'pdf', 'application/pdf')


@override_settings(**FAST_CRYPTO)
class AccountDeletionServiceTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.user = User.objects.create_user(email='user@example.com', password=PASSWORD)
        self.other = User.objects.create_user(email='other@example.com', password=PASSWORD)
        OneTimeCodeService.ensure_profile(self.user)
        self.store = InMemoryObjectStore()
        _seed_vault(self.user, self.store)
        _seed_vault(self.other, self.store)

        patcher = patch('accounts.deletion.get_audit_logger')
        self.audit = patcher.start()
        self.addCleanup(patcher.stop)

    def test_every_step_runs_in_order(self):
        report = AccountDeletionService.delete_account(self.user, object_store=self.store)

        self.assertEqual(
            [step.step for step in report.steps],
            ['profile', 'files', 'notes', 'passwords', 'storage', 'auth_user'],
        )
        self.assertTrue(report.completed)
        self.assertFalse(get_user_model().objects.filter(pk=self.user.pk).exists())
        self.assertFalse(UserProfile.objects.filter(user_id=self.user.pk).exists())
        self.assertEqual(self.store.list(f"{self.user.pk}/"), [])
        self.assertEqual(self.store.list(f"{self.other.pk}/"), [f"{self.other.pk}/scan.pdf"])
        self.assertEqual(PasswordEntry.objects.filter(user=self.other).count(), 1)

        self.audit.return_value.log_event.assert_called_once()
        self.assertEqual(self.audit.return_value.log_event.call_args.args[0], 'account_deleted')

    def test_failed_step_does_not_stop_later_steps(self):
        failing_store = MagicMock(spec=BaseObjectStore)
        failing_store.list.side_effect = ObjectStoreError('storage offline')

        with self.assertLogs('accounts', level='ERROR') as captured:
            report = AccountDeletionService.delete_account(self.user, object_store=failing_store)

        self.assertFalse(report.completed)
        self.assertEqual(report.failed_steps, ['storage'])
        self.assertTrue(report.step('auth_user').succeeded)
        self.assertFalse(get_user_model().objects.filter(pk=self.user.pk).exists())
        self.assertTrue(any("'storage' failed" in line for line in captured.output))
        self.assertEqual(self.audit.return_value.log_event.call_args.args[0], 'account_deletion_incomplete')

    def test_auth_record_failure_raises_with_report(self):
        user_model = MagicMock()
        user_model.objects.filter.return_value.delete.side_effect = DatabaseError('locked')

        with patch('accounts.deletion.get_user_model', return_value=user_model):
            with self.assertRaises(AccountDeletionError) as ctx:
                AccountDeletionService.delete_account(self.user, object_store=self.store)

        self.assertEqual(str(ctx.exception), DELETION_FAILED_MESSAGE)
        self.assertEqual(ctx.exception.report.failed_steps, ['auth_user'])
        self.assertFalse(PasswordEntry.objects.filter(user_id=self.user.pk).exists())

    def test_rerun_after_success_is_harmless(self):
        AccountDeletionService.delete_account(self.user, object_store=self.store)
        report = AccountDeletionService.delete_account(self.user, object_store=self.store)
        self.assertTrue(report.completed)
        self.assertEqual(report.step('auth_user').detail, 'auth record already absent')


@override_settings(**FAST_CRYPTO)
class AccountDeletionFlowTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = get_user_model().objects.create_user(email='user@example.com', password=PASSWORD)
        OneTimeCodeService.ensure_profile(self.user)

        request = RequestFactory().post('/profile/delete/', REMOTE_ADDR='192.0.2.1')
        SessionMiddleware(lambda req: None).process_request(request)
        request.session.save()
        request.user = self.user
        self.request = request
        self.flow = AccountDeletionFlow(request)

        patcher = patch('accounts.deletion.get_audit_logger')
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_wrong_password_keeps_flow_idle(self):
        self.assertIsNone(self.flow.verify_password('wrong'))
        self.assertEqual(self.flow.error, INCORRECT_PASSWORD_MESSAGE)
        self.assertEqual(self.flow.stage, DeletionStage.IDLE)

    def test_code_submission_without_verification(self):
        self.assertIsNone(self.flow.submit_code('123456'))
        self.assertEqual(self.flow.error, NO_CODE_MESSAGE)

    def test_wrong_code_can_be_retried_and_cancel_discards_code(self):
        code = self.flow.verify_password(PASSWORD)
        self.assertEqual(self.flow.stage, DeletionStage.AWAITING_CODE)

        for _ in range(3):
            self.assertIsNone(self.flow.submit_code(_other_code(code)))
            self.assertEqual(self.flow.error, INVALID_CODE_MESSAGE)
        self.assertEqual(self.flow.stage, DeletionStage.AWAITING_CODE)

        self.flow.cancel()
        self.assertEqual(self.flow.stage, DeletionStage.IDLE)
        self.assertIsNone(self.flow.submit_code(code))
        self.assertEqual(self.flow.error, NO_CODE_MESSAGE)

    def test_deletion_code_is_separate_from_reveal_code(self):
        reveal_code = OneTimeCodeService.get_code(self.user)
        profile_before = UserProfile.objects.get(user=self.user).one_time_code

        code = self.flow.verify_password(PASSWORD)

        self.assertRegex(code, r'^[1-9]\d{5}$')
        self.assertEqual(self.request.session[DELETION_CODE_KEY], code)
        self.assertEqual(UserProfile.objects.get(user=self.user).one_time_code, profile_before)
        self.assertEqual(OneTimeCodeService.get_code(self.user), reveal_code)

    def test_correct_code_deletes_account_and_logs_out(self):
        code = self.flow.verify_password(PASSWORD)

        report = self.flow.submit_code(code, object_store=InMemoryObjectStore())

        self.assertTrue(report.completed)
        self.assertFalse(get_user_model().objects.filter(pk=self.user.pk).exists())
        self.assertFalse(self.request.user.is_authenticated)
        self.assertNotIn(DELETION_CODE_KEY, self.request.session)

    def test_failed_saga_surfaces_error(self):
        code = self.flow.verify_password(PASSWORD)
        error = AccountDeletionError(DELETION_FAILED_MESSAGE)

        with patch('accounts.deletion.AccountDeletionService.delete_account', side_effect=error):
            with self.assertRaises(AccountDeletionError):
                self.flow.submit_code(code)

        self.assertEqual(self.flow.error, DELETION_FAILED_MESSAGE)
        self.assertEqual(self.flow.stage, DeletionStage.AUTHORIZED)


@override_settings(**FAST_CRYPTO, VAULT_OBJECT_STORE_BACKEND='memory')
class AccountsViewTests(TestCase):
    def setUp(self):
        cache.clear()
        reset_object_store()
        self.addCleanup(reset_object_store)
        self.user = get_user_model().objects.create_user(email='user@example.com', password=PASSWORD)
        self.client.force_login(self.user)

        patcher = patch('accounts.deletion.get_audit_logger')
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_anonymous_requests_get_401(self):
        for url in ('/profile/', '/profile/one-time-code/'):
            response = Client().get(url)
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json(), {'error': 'Not authenticated'})

    def test_login_provisions_one_time_code(self):
        self.assertTrue(UserProfile.objects.filter(user=self.user).exclude(one_time_code='').exists())

    def test_profile_read_and_update(self):
        response = self.client.get('/profile/')
        self.assertEqual(response.json()['profile']['email'], 'user@example.com')

        response = self.client.post('/profile/', {'full_name': 'Ada Lovelace', 'phone': '+44 20 7946 0000'})
        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertEqual(self.user.full_name, 'Ada Lovelace')
        self.assertEqual(self.user.phone, '+44 20 7946 0000')

    def test_profile_rejects_unknown_fields(self):
        response = self.client.post('/profile/', {'nickname': 'ada'})
        self.assertEqual(response.status_code, 400)
        self.assertIn('nickname', response.json()['error'])

    def test_profile_update_from_csrf_protected_form(self):
        client = Client(enforce_csrf_checks=True)
        client.force_login(self.user)
        token = 'a1' * 16
        client.cookies[settings.CSRF_COOKIE_NAME] = token

        response = client.post('/profile/', {'full_name': 'Ada', 'csrfmiddlewaretoken': token})

        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertEqual(self.user.full_name, 'Ada')

    def test_one_time_code_is_shown_until_acknowledged(self):
        response = self.client.get('/profile/one-time-code/')
        self.assertEqual(response['Cache-Control'], 'no-store, private')
        self.assertEqual(response.json()['code'], OneTimeCodeService.get_code(self.user))

        self.assertTrue(self.client.post('/profile/one-time-code/').json()['acknowledged'])

        self.assertEqual(self.client.get('/profile/one-time-code/').json(), {'code': None, 'pending': False})

    def test_account_deletion_over_http(self):
        url = '/profile/delete/'

        response = self.client.post(url, {'action': 'verify_password', 'password': 'wrong'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], INCORRECT_PASSWORD_MESSAGE)

        response = self.client.post(url, {'action': 'verify_password', 'password': PASSWORD})
        code = response.json()['code']

        response = self.client.post(url, {'action': 'submit_code', 'code': _other_code(code)})
        self.assertEqual(response.json()['error'], INVALID_CODE_MESSAGE)

        response = self.client.post(url, {'action': 'submit_code', 'code': code})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['deleted'])
        self.assertFalse(get_user_model().objects.filter(pk=self.user.pk).exists())

    def test_unknown_deletion_action(self):
        response = self.client.post('/profile/delete/', {'action': 'explode'})
        self.assertEqual(response.status_code, 400)

    def test_logout_page_clears_session(self):
        response = self.client.get('/logout/')
        self.assertRedirects(response, reverse('account_login'), fetch_redirect_response=False)
        self.assertEqual(self.client.get('/profile/').status_code, 401)


class HardenedPasswordResetViewTests(TestCase):
    def test_invalid_token_redirects_with_message(self):
        request = RequestFactory().get('/accounts/password/reset/key/1-x/')
        SessionMiddleware(lambda req: None).process_request(request)
        request.session.save()
        request._messages = FallbackStorage(request)
        view = views.HardenedPasswordResetFromKeyView()
        view.setup(request)

        with patch('accounts.views.messages.error') as mock_error:
            response = view.render_to_response({'token_fail': True})

        mock_error.assert_called_once()
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.url, reverse('account_reset_password'))


@override_settings(**FAST_CRYPTO)
class AccountsSignalTests(TestCase):
    def setUp(self):
        cache.clear()

    def test_login_signal_provisions_and_caches_code(self):
        user = get_user_model().objects.create_user(email='user@example.com', password=PASSWORD)
        request = RequestFactory().get('/', REMOTE_ADDR='127.0.0.1')
        SessionMiddleware(lambda req: None).process_request(request)

        signals.provision_code_on_login(sender=None, request=request, user=user)

        self.assertTrue(UserProfile.objects.filter(user=user).exists())
        self.assertIn(REVEAL_CODE_KEY, request.session)

    def test_login_failures_feed_the_email_throttle(self):
        request = SimpleNamespace(META={'REMOTE_ADDR': '192.0.2.50'})
        with patch('accounts.signals.logger') as mock_logger:
            for _ in range(7):
                signals.log_login_failure(
                    sender=None,
                    credentials={'username': 'user@example.com'},
                    request=request,
                )

        self.assertEqual(mock_logger.security_event.call_count, 7)
        self.assertTrue(is_rate_limited(RateLimitScenario.LOGIN_EMAIL, 'user@example.com').blocked)


@override_settings(**FAST_CRYPTO)
class SetupAllauthCommandTests(TestCase):
    def test_backfills_site_email_rows_and_codes(self):
        user = get_user_model().objects.create_user(email='user@example.com', password=PASSWORD)
        out = StringIO()

        management.call_command('setup_allauth', '--domain', 'vault.example.com', stdout=out)

        self.assertEqual(Site.objects.get(pk=1).domain, 'vault.example.com')
        self.assertTrue(EmailAddress.objects.filter(user=user, primary=True).exists())
        self.assertIsNotNone(OneTimeCodeService.get_code(user))
        self.assertIn('1 verification code(s)', out.getvalue())

        out = StringIO()
        management.call_command('setup_allauth', stdout=out)
        self.assertIn('0 email address row(s) and 0 verification code(s)', out.getvalue())
