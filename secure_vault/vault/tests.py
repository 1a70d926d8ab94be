import base64
import datetime
import os
import shutil
import tempfile
from io import StringIO
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from django.contrib.auth import get_user_model
from django.core import management
from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError
from django.http import QueryDict
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from accounts.models import UserProfile
from accounts.one_time_code import OneTimeCodeService
from accounts.verification import INVALID_CODE_MESSAGE, GateState
from vault.codec import _evp_bytes_to_key, is_legacy_ciphertext, reseal, seal, unseal
from vault.exceptions import CryptoError, DecryptionError, ObjectStoreError
from vault.file_service import FileService, clean_file_name
from vault.models import Note, PasswordEntry, StoredFile
from vault.note_service import NoteService, NoteView, open_notes
from vault.object_storage import (
    InMemoryObjectStore,
    LocalObjectStore,
    S3ObjectStore,
    reset_object_store,
)
from vault.password_service import MASK, PasswordProxy, PasswordService
from vault.queries import (
    filter_notes,
    get_owned,
    password_strength_points,
    security_score,
    sort_notes,
)
from vault.schemas import (
    FileMetadataUpdate,
    NoteInput,
    NoteUpdate,
    PasswordInput,
    PasswordUpdate,
)

FAST_CRYPTO = {
    'VAULT_CODEC_ITERATIONS': 1000,
    'PASSWORD_HASHERS': ['django.contrib.auth.hashers.MD5PasswordHasher'],
}


def legacy_seal(plaintext, key_material, salt=b'8bytesal'):
    """Produce an OpenSSL ``Salted__`` container the way the previous client did."""
    key, iv = _evp_bytes_to_key(key_material.encode('utf-8'), salt)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode('utf-8')) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    body = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(b'Salted__' + salt + body).decode('ascii')


def _create_user(email='user@example.com'):
    return get_user_model().objects.create_user(email=email, password='irrelevant-password')


@override_settings(**FAST_CRYPTO)
class CodecTests(SimpleTestCase):
    key = '3f1c7f0e-52a4-4b43-9d5e-8b1f6f1c2a10'

    def test_round_trip(self):
        for plaintext in ('hunter2', '', 'ünïcødé ✓', 'x' * 5000):
            self.assertEqual(unseal(seal(plaintext, self.key), self.key), plaintext)

    def test_ciphertext_differs_from_plaintext_and_between_calls(self):
        first = seal('hunter2', self.key)
        second = seal('hunter2', self.key)
        self.assertTrue(first.startswith('v1:'))
        self.assertNotIn('hunter2', first)
        self.assertNotEqual(first, second)

    def test_wrong_key_raises(self):
        sealed = seal('hunter2', self.key)
        with self.assertRaises(DecryptionError):
            unseal(sealed, 'another-user')

    def test_tampered_or_garbage_input_raises(self):
        sealed = seal('hunter2', self.key)
        tampered = sealed[:-4] + ('AAAA' if not sealed.endswith('AAAA') else 'BBBB')
        for value in (tampered, '', 'v1:', 'v1:not base64!', 'plain text', 'v1:' + 'A' * 8):
            with self.assertRaises(DecryptionError):
                unseal(value, self.key)

    def test_non_text_input_is_rejected(self):
        with self.assertRaises(CryptoError):
            seal(b'bytes', self.key)
        with self.assertRaises(CryptoError):
            seal('text', None)
        with self.assertRaises(DecryptionError):
            unseal(None, self.key)

    def test_iteration_count_travels_with_the_value(self):
        sealed = seal('hunter2', self.key)
        with self.settings(VAULT_CODEC_ITERATIONS=2000):
            self.assertEqual(unseal(sealed, self.key), 'hunter2')

    def test_legacy_values_are_accepted_and_resealed(self):
        legacy = legacy_seal('old secret', self.key)
        self.assertTrue(is_legacy_ciphertext(legacy))
        self.assertEqual(unseal(legacy, self.key), 'old secret')

        current = reseal(legacy, self.key)
        self.assertFalse(is_legacy_ciphertext(current))
        self.assertEqual(unseal(current, self.key), 'old secret')

    def test_truncated_legacy_value_raises(self):
        legacy = base64.b64decode(legacy_seal('old secret', self.key))
        with self.assertRaises(DecryptionError):
            unseal(base64.b64encode(legacy[:-3]).decode('ascii'), self.key)

    def test_bad_legacy_padding_is_reported_as_padding_error(self):
        salt = b'8bytesal'
        key, iv = _evp_bytes_to_key(self.key.encode('utf-8'), salt)
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        # Final byte 0x41 is not a valid PKCS7 pad length.
        body = encryptor.update(b'A' * 16) + encryptor.finalize()
        value = base64.b64encode(b'Salted__' + salt + body).decode('ascii')

        with self.assertRaisesMessage(DecryptionError, 'Invalid padding - wrong key or corrupted data'):
            unseal(value, self.key)


class SchemaTests(SimpleTestCase):
    def test_password_input_requires_core_fields(self):
        with self.assertRaisesMessage(ValidationError, 'Title, username, and password are required'):
            PasswordInput.from_data({'title': 'Mail', 'username': 'me', 'password': ''})

    def test_unknown_fields_are_rejected(self):
        with self.assertRaisesMessage(ValidationError, 'Unknown field(s): colour'):
            NoteInput.from_data({'title': 'Hi', 'colour': 'red'})

    def test_control_fields_are_ignored(self):
        data = QueryDict(mutable=True)
        data.update({'action': 'create', 'csrfmiddlewaretoken': 't', 'title': 'Mail',
                     'username': 'me', 'password': 'pw'})
        entry = PasswordInput.from_data(data)
        self.assertEqual((entry.title, entry.url), ('Mail', ''))

    def test_length_limits_follow_the_model(self):
        with self.assertRaisesMessage(ValidationError, 'title must be at most 200 characters'):
            NoteInput.from_data({'title': 'x' * 201})

    def test_tags_are_split_and_deduplicated(self):
        data = QueryDict('title=Hi&tags=work, home&tags=home&tags=', mutable=False)
        self.assertEqual(NoteInput.from_data(data).tags, ['work', 'home'])
        self.assertEqual(NoteInput.from_data({'title': 'Hi', 'tags': ['a', 'b,c']}).tags, ['a', 'b', 'c'])

    def test_partial_updates(self):
        update = PasswordUpdate.from_data({'notes': 'rotated'})
        self.assertEqual(update.changes(), {'notes': 'rotated'})
        self.assertFalse(PasswordUpdate.from_data({}))

        with self.assertRaises(ValidationError):
            PasswordUpdate.from_data({'password': ''})
        with self.assertRaises(ValidationError):
            NoteUpdate.from_data({'title': ''})

        self.assertEqual(NoteUpdate.from_data({'content': ''}).changes(), {'content': ''})
        self.assertEqual(FileMetadataUpdate.from_data({'category': 'tax'}).changes(), {'category': 'tax'})


class QueryTests(SimpleTestCase):
    def _note(self, title, category='', tags=(), content='', days=0, subtitle=''):
        return SimpleNamespace(
            title=title, subtitle=subtitle, category=category, tags=list(tags), content=content,
            updated_at=timezone.now() - datetime.timedelta(days=days),
        )

    def test_strength_points(self):
        self.assertEqual(password_strength_points(''), 0)
        self.assertEqual(password_strength_points('abc'), 1)
        self.assertEqual(password_strength_points('abcdefgh'), 2)
        self.assertEqual(password_strength_points('Abcdefgh1!xy'), 6)

    def test_security_score(self):
        self.assertEqual(security_score([]), 0)
        self.assertEqual(security_score(['Abcdefgh1!xy']), 100)
        self.assertEqual(security_score(['Abcdefgh1!xy', 'abc']), 58)

    def test_security_score_rounds_halves_up(self):
        # 3 of 24 points is 12.5 percent
        self.assertEqual(security_score(['a', 'b', 'c', '']), 13)

    def test_filter_notes_searches_opened_content(self):
        notes = [
            self._note('Groceries', category='home', tags=['list'], content='tomatoes'),
            self._note('Standup', category='work', tags=['daily'], subtitle='Tomato project'),
            self._note('Ideas', category='work'),
        ]
        self.assertEqual([n.title for n in filter_notes(notes, search='TOMATO')], ['Groceries', 'Standup'])
        self.assertEqual([n.title for n in filter_notes(notes, category='work')], ['Standup', 'Ideas'])
        self.assertEqual([n.title for n in filter_notes(notes, tag='daily')], ['Standup'])
        self.assertEqual(filter_notes(notes, search='tomato', category='home', tag='daily'), [])

    def test_sort_notes(self):
        notes = [self._note('beta', 'b', days=2), self._note('Alpha', 'c', days=0), self._note('gamma', 'a', days=1)]
        self.assertEqual([n.title for n in sort_notes(notes, 'title', 'asc')], ['Alpha', 'beta', 'gamma'])
        self.assertEqual([n.title for n in sort_notes(notes, 'category', 'desc')], ['Alpha', 'beta', 'gamma'])
        self.assertEqual([n.title for n in sort_notes(notes)], ['Alpha', 'gamma', 'beta'])

        with self.assertRaises(ValidationError):
            sort_notes(notes, 'size')
        with self.assertRaises(ValidationError):
            sort_notes(notes, 'title', 'sideways')


@override_settings(**FAST_CRYPTO)
class PasswordServiceTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = _create_user()
        self.other = _create_user('other@example.com')

    def _create(self, user=None, **overrides):
        values = {'title': 'Mail', 'username': 'me@example.com', 'password': 'Sup3r$ecretPass'}
        values.update(overrides)
        return PasswordService.create(user or self.user, PasswordInput.from_data(values))

    def test_password_is_sealed_at_rest(self):
        entry = self._create()
        stored = PasswordEntry.objects.get(pk=entry.pk).password
        self.assertNotEqual(stored, 'Sup3r$ecretPass')
        self.assertEqual(unseal(stored, str(self.user.pk)), 'Sup3r$ecretPass')

    def test_update_reseals_only_when_password_supplied(self):
        entry = self._create()
        sealed = entry.password

        PasswordService.update(self.user, entry.id, PasswordUpdate.from_data({'notes': 'shared account'}))
        entry.refresh_from_db()
        self.assertEqual(entry.password, sealed)
        self.assertEqual(entry.notes, 'shared account')

        PasswordService.update(self.user, entry.id, PasswordUpdate.from_data({'password': 'n3w-Passw0rd'}))
        entry.refresh_from_db()
        self.assertEqual(PasswordService.reveal(self.user, entry), 'n3w-Passw0rd')

    def test_other_users_entries_are_invisible(self):
        entry = self._create(user=self.other)
        with self.assertRaises(PasswordEntry.DoesNotExist):
            PasswordService.get_entry(self.user, entry.id)
        with self.assertRaises(PasswordEntry.DoesNotExist):
            PasswordService.delete(self.user, entry.id)
        with self.assertRaises(PasswordEntry.DoesNotExist):
            get_owned(PasswordEntry, self.user, 'not-a-uuid')
        self.assertTrue(PasswordEntry.objects.filter(pk=entry.pk).exists())

    def test_list_filters(self):
        self._create(title='Bank', category='finance')
        self._create(title='Mail', url='https://mail.example.com')
        self.assertEqual([e.title for e in PasswordService.list_entries(self.user, search='mail.example')], ['Mail'])
        self.assertEqual([e.title for e in PasswordService.list_entries(self.user, category='finance')], ['Bank'])

    def test_proxy_masks_until_revealed(self):
        entry = self._create()
        proxy = PasswordProxy(self.user, entry)
        with patch.object(PasswordService, 'reveal', wraps=PasswordService.reveal) as reveal:
            self.assertEqual(proxy.as_dict()['password'], MASK)
            reveal.assert_not_called()
            self.assertEqual(proxy.as_dict(revealed=True)['password'], 'Sup3r$ecretPass')
            self.assertEqual(proxy.password, 'Sup3r$ecretPass')
            reveal.assert_called_once()

    def test_security_score_skips_unreadable_entries(self):
        self._create(password='Abcdefgh1!xy')
        PasswordEntry.objects.create(user=self.user, title='Broken', username='x',
                                     password=seal('abc', 'someone-else'))
        self.assertEqual(PasswordService.security_score(self.user), 100)
        self.assertEqual(PasswordService.security_score(self.other), 0)

    def test_reveal_of_foreign_ciphertext_raises(self):
        entry = PasswordEntry.objects.create(user=self.user, title='Broken', username='x',
                                             password=seal('abc', 'someone-else'))
        with self.assertRaises(DecryptionError):
            PasswordService.reveal(self.user, entry)


@override_settings(**FAST_CRYPTO)
class NoteServiceTests(TestCase):
    def setUp(self):
        self.user = _create_user()

    def _create(self, **values):
        values.setdefault('title', 'Diary')
        return NoteService.create(self.user, NoteInput.from_data(values))

    def _ids(self, view):
        return [note.id for note in NoteService.list_notes(self.user, view)]

    def test_content_is_sealed_and_defaults_applied(self):
        note = self._create(content='dear diary')
        self.assertNotEqual(note.content, 'dear diary')
        self.assertEqual(NoteService.read_content(self.user, note), 'dear diary')
        self.assertEqual((note.background_color, note.font_family, note.font_size),
                         ('#ffffff', 'JetBrains Mono', '16px'))

    def test_empty_content_is_still_sealed(self):
        note = self._create()
        NoteService.update(self.user, note.id, NoteUpdate.from_data({'content': ''}))
        note.refresh_from_db()
        self.assertTrue(note.content.startswith('v1:'))
        self.assertEqual(NoteService.read_content(self.user, note), '')

    def test_lifecycle_between_views(self):
        note = self._create()
        self.assertEqual(self._ids(NoteView.ACTIVE), [note.id])

        NoteService.archive(self.user, note.id)
        self.assertEqual(self._ids(NoteView.ACTIVE), [])
        self.assertEqual(self._ids(NoteView.ARCHIVED), [note.id])

        NoteService.move_to_trash(self.user, note.id)
        self.assertEqual(self._ids(NoteView.ARCHIVED), [])
        self.assertEqual(self._ids(NoteView.TRASH), [note.id])

        NoteService.restore_from_trash(self.user, note.id)
        NoteService.unarchive(self.user, note.id)
        self.assertEqual(self._ids(NoteView.ACTIVE), [note.id])

    def test_state_changes_do_not_touch_updated_at(self):
        note = self._create()
        updated_at = note.updated_at
        NoteService.archive(self.user, note.id)
        note.refresh_from_db()
        self.assertEqual(note.updated_at, updated_at)
        self.assertTrue(note.is_archived)

    def test_empty_trash_removes_only_trashed_notes(self):
        keep = self._create(title='Keep')
        for title in ('Old', 'Older'):
            NoteService.move_to_trash(self.user, self._create(title=title).id)

        self.assertEqual(NoteService.empty_trash(self.user), 2)
        self.assertEqual(list(Note.objects.filter(user=self.user).values_list('id', flat=True)), [keep.id])

    def test_unreadable_note_is_flagged(self):
        note = Note.objects.create(user=self.user, title='Broken', content=seal('x', 'someone-else'))
        data = open_notes(self.user, [note])[0].as_dict()
        self.assertTrue(data['unreadable'])
        self.assertIsNone(data['content'])

    def test_unknown_view(self):
        with self.assertRaises(ValueError):
            NoteService.list_notes(self.user, 'drafts')


class FileServiceTests(TestCase):
    def setUp(self):
        self.user = _create_user()
        self.store = InMemoryObjectStore()

    def _upload(self, name='scan.pdf', content=b'%PDF-1.7', **metadata):
        uploaded = SimpleUploadedFile(name, content, content_type='application/pdf')
        return FileService.upload(self.user, uploaded, FileMetadataUpdate.from_data(metadata),
                                  object_store=self.store)

    def test_upload_stores_object_and_row(self):
        stored = self._upload(category='tax')
        self.assertEqual(stored.path, f"{self.user.pk}/scan.pdf")
        self.assertEqual(stored.size, 8)
        self.assertEqual(stored.category, 'tax')
        self.assertEqual(self.store.download(stored.path), b'%PDF-1.7')

        download = FileService.download(self.user, stored.id, object_store=self.store)
        self.assertEqual((download.name, download.content_type, download.content),
                         ('scan.pdf', 'application/pdf', b'%PDF-1.7'))

    def test_duplicate_name_is_rejected(self):
        self._upload()
        with self.assertRaises(ObjectStoreError):
            self._upload()
        self.assertEqual(StoredFile.objects.filter(user=self.user).count(), 1)

    def test_row_failure_removes_uploaded_object(self):
        with patch('vault.file_service.StoredFile.objects.create', side_effect=DatabaseError('disk full')):
            with self.assertRaises(DatabaseError):
                self._upload()
        self.assertEqual(self.store.list(f"{self.user.pk}/"), [])

    @override_settings(VAULT_MAX_UPLOAD_BYTES=4)
    def test_size_limit(self):
        with self.assertRaises(ValidationError):
            self._upload()
        self.assertEqual(self.store.list(''), [])

    def test_delete_removes_object_then_row(self):
        stored = self._upload()
        FileService.delete(self.user, stored.id, object_store=self.store)
        self.assertFalse(self.store.exists(stored.path))
        self.assertFalse(StoredFile.objects.filter(pk=stored.pk).exists())

    def test_metadata_update(self):
        stored = self._upload()
        FileService.update(self.user, stored.id, FileMetadataUpdate.from_data({'notes': '2024 return'}))
        stored.refresh_from_db()
        self.assertEqual(stored.notes, '2024 return')

    def test_clean_file_name(self):
        self.assertEqual(clean_file_name('C:\\Users\\me\\scan.pdf'), 'scan.pdf')
        self.assertEqual(clean_file_name('../../etc/passwd'), 'passwd')
        for bad in ('', '..', '/'):
            with self.assertRaises(ValidationError):
                clean_file_name(bad)


class LocalObjectStoreTests(SimpleTestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, ignore_errors=True)
        self.store = LocalObjectStore(self.root)

    def test_upload_list_download_remove(self):
        self.store.upload('u1/a.txt', b'alpha', 'text/plain')
        self.store.upload('u1/b.txt', b'beta', 'text/plain')
        self.store.upload('u2/a.txt', b'other', 'text/plain')

        self.assertTrue(os.path.exists(os.path.join(self.root, 'u1', 'a.txt')))
        self.assertEqual(self.store.list('u1/'), ['u1/a.txt', 'u1/b.txt'])
        self.assertEqual(self.store.download('u1/b.txt'), b'beta')

        self.store.remove(['u1/a.txt', 'u1/b.txt'])
        self.assertEqual(self.store.list('u1/'), [])
        self.assertTrue(self.store.exists('u2/a.txt'))

    def test_duplicate_and_missing_objects(self):
        self.store.upload('u1/a.txt', b'alpha', 'text/plain')
        with self.assertRaises(ObjectStoreError):
            self.store.upload('u1/a.txt', b'again', 'text/plain')
        with self.assertRaises(ObjectStoreError):
            self.store.download('u1/missing.txt')
        self.assertEqual(self.store.list('nobody/'), [])


class S3ObjectStoreTests(SimpleTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.store = S3ObjectStore('secure-files', client=self.client)

    def _error(self, code, operation='HeadObject'):
        return ClientError({'Error': {'Code': code, 'Message': code}}, operation)

    def test_upload_checks_for_existing_object(self):
        self.client.head_object.side_effect = self._error('404')
        self.store.upload('u1/a.txt', b'alpha', 'text/plain')
        self.client.put_object.assert_called_once_with(
            Bucket='secure-files', Key='u1/a.txt', Body=b'alpha', ContentType='text/plain',
        )

        self.client.head_object.side_effect = None
        with self.assertRaises(ObjectStoreError):
            self.store.upload('u1/a.txt', b'alpha', 'text/plain')

    def test_list_walks_every_page(self):
        self.client.get_paginator.return_value.paginate.return_value = [
            {'Contents': [{'Key': 'u1/a.txt'}, {'Key': 'u1/b.txt'}]},
            {},
        ]
        self.assertEqual(self.store.list('u1/'), ['u1/a.txt', 'u1/b.txt'])
        self.client.get_paginator.return_value.paginate.assert_called_once_with(
            Bucket='secure-files', Prefix='u1/',
        )

    def test_remove_batches_requests(self):
        self.client.delete_objects.return_value = {}
        self.store.remove([f"u1/{i}.txt" for i in range(2500)])
        self.assertEqual(self.client.delete_objects.call_count, 3)

    def test_partial_remove_failure_raises(self):
        self.client.delete_objects.return_value = {'Errors': [{'Key': 'u1/a.txt', 'Code': 'AccessDenied'}]}
        with self.assertRaises(ObjectStoreError):
            self.store.remove(['u1/a.txt'])

    def test_client_errors_become_object_store_errors(self):
        self.client.get_object.side_effect = self._error('AccessDenied', 'GetObject')
        with self.assertRaises(ObjectStoreError):
            self.store.download('u1/a.txt')

        self.client.head_object.side_effect = self._error('AccessDenied')
        with self.assertRaises(ObjectStoreError):
            self.store.exists('u1/a.txt')


@override_settings(**FAST_CRYPTO, VAULT_OBJECT_STORE_BACKEND='memory')
class VaultViewTests(TestCase):
    def setUp(self):
        cache.clear()
        reset_object_store()
        self.addCleanup(reset_object_store)
        self.user = _create_user()
        self.other = _create_user('other@example.com')
        self.client.force_login(self.user)
        self.code = OneTimeCodeService.get_code(self.user)
        self.entry = PasswordService.create(self.user, PasswordInput.from_data({
            'title': 'Mail', 'username': 'me', 'password': 'Sup3r$ecretPass',
        }))

    def _reveal(self, action, entry_id=None, **data):
        url = f"/vault/passwords/{entry_id or self.entry.id}/reveal/"
        return self.client.post(url, {'action': action, **data})

    def test_anonymous_requests_get_401(self):
        anonymous = Client()
        for url in ('/vault/dashboard/', '/vault/passwords/', '/vault/notes/', '/vault/files/'):
            self.assertEqual(anonymous.get(url).status_code, 401)

    def test_dashboard(self):
        response = self.client.get('/vault/dashboard/')
        data = response.json()
        self.assertEqual(data['counts'], {'passwords': 1, 'notes': 0, 'files': 0})
        self.assertEqual(data['security_score'], 100)
        self.assertEqual(data['pending_code'], self.code)
        self.assertEqual(response['Cache-Control'], 'no-store, private')

    def test_dashboard_survives_unreadable_code(self):
        UserProfile.objects.filter(user=self.user).update(one_time_code=seal('482913', 'other-key'))

        response = self.client.get('/vault/dashboard/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'application/json')
        self.assertIsNone(response.json()['pending_code'])
        self.assertEqual(response.json()['counts']['passwords'], 1)

    def test_passwords_are_masked_in_lists(self):
        data = self.client.get('/vault/passwords/').json()
        self.assertEqual(data['passwords'][0]['password'], MASK)
        self.assertFalse(data['passwords'][0]['revealed'])

    def test_reveal_flow(self):
        response = self._reveal('request')
        self.assertEqual(response.json()['gate']['state'], GateState.AWAITING_CODE)
        self.assertNotIn('password', response.json())

        wrong = '000000' if self.code != '000000' else '111111'
        response = self._reveal('submit', code=wrong)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['gate']['error'], INVALID_CODE_MESSAGE)

        response = self._reveal('submit', code=self.code)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['password'], 'Sup3r$ecretPass')
        self.assertEqual(self.client.get('/vault/passwords/').json()['passwords'][0]['password'], 'Sup3r$ecretPass')

        response = self._reveal('hide')
        self.assertEqual(response.json()['gate']['state'], GateState.HIDDEN)
        self.assertEqual(self.client.get('/vault/passwords/').json()['passwords'][0]['password'], MASK)

    def test_submit_without_request_conflicts(self):
        self.assertEqual(self._reveal('submit', code=self.code).status_code, 409)

    def test_foreign_and_malformed_ids_are_not_found(self):
        foreign = PasswordService.create(self.other, PasswordInput.from_data({
            'title': 'Theirs', 'username': 'them', 'password': 'pw',
        }))
        self.assertEqual(self._reveal('request', entry_id=foreign.id).status_code, 404)
        self.assertEqual(self._reveal('request', entry_id='not-a-uuid').status_code, 404)
        response = self.client.post('/vault/passwords/', {'action': 'delete', 'id': str(foreign.id)})
        self.assertEqual(response.status_code, 404)

    def test_password_crud(self):
        response = self.client.post('/vault/passwords/', {
            'title': 'Bank', 'username': 'me', 'password': 'pw', 'category': 'finance',
        })
        self.assertEqual(response.status_code, 201)
        created_id = response.json()['password']['id']

        response = self.client.post('/vault/passwords/', {'action': 'edit', 'id': created_id, 'notes': 'joint'})
        self.assertEqual(response.json()['password']['notes'], 'joint')

        self.assertEqual(self.client.post('/vault/passwords/', {'title': 'x', 'colour': 'red'}).status_code, 400)

        response = self.client.post('/vault/passwords/', {'action': 'delete', 'id': created_id})
        self.assertEqual(response.json(), {'deleted': created_id})
        self.assertEqual(PasswordEntry.objects.filter(user=self.user).count(), 1)

    def test_notes_lifecycle(self):
        response = self.client.post('/vault/notes/', {'title': 'Groceries', 'content': 'tomatoes', 'tags': 'home'})
        self.assertEqual(response.status_code, 201)
        note_id = response.json()['note']['id']

        data = self.client.get('/vault/notes/', {'search': 'tomato'}).json()
        self.assertEqual([note['id'] for note in data['notes']], [note_id])
        self.assertEqual(data['tags'], ['home'])

        self.client.post('/vault/notes/', {'action': 'archive', 'id': note_id})
        self.assertEqual(self.client.get('/vault/notes/').json()['notes'], [])
        self.assertEqual(len(self.client.get('/vault/notes/', {'view': 'archived'}).json()['notes']), 1)

        self.client.post('/vault/notes/', {'action': 'trash', 'id': note_id})
        response = self.client.post('/vault/notes/', {'action': 'empty_trash'})
        self.assertEqual(response.json(), {'deleted': 1})

    def test_notes_reject_bad_queries(self):
        self.assertEqual(self.client.get('/vault/notes/', {'view': 'drafts'}).status_code, 400)
        self.assertEqual(self.client.get('/vault/notes/', {'sort': 'size'}).status_code, 400)
        self.assertEqual(self.client.post('/vault/notes/', {'action': 'explode'}).status_code, 400)

    def test_file_upload_and_download(self):
        upload = SimpleUploadedFile('scan.pdf', b'%PDF-1.7', content_type='application/pdf')
        response = self.client.post('/vault/files/', {'action': 'upload', 'file': upload, 'category': 'tax'})
        self.assertEqual(response.status_code, 201)
        file_id = response.json()['file']['id']

        response = self.client.get(f"/vault/files/{file_id}/download/")
        self.assertEqual(b''.join(response.streaming_content), b'%PDF-1.7')
        self.assertIn('attachment', response['Content-Disposition'])
        self.assertEqual(response['Cache-Control'], 'no-store, private')

        upload = SimpleUploadedFile('scan.pdf', b'again', content_type='application/pdf')
        response = self.client.post('/vault/files/', {'action': 'upload', 'file': upload})
        self.assertEqual(response.status_code, 502)

    def test_upload_requires_a_file(self):
        self.assertEqual(self.client.post('/vault/files/', {'action': 'upload'}).status_code, 400)


@override_settings(**FAST_CRYPTO)
class ResealLegacyCommandTests(TestCase):
    def setUp(self):
        self.user = _create_user()
        self.key = str(self.user.pk)
        self.entry = PasswordEntry.objects.create(
            user=self.user, title='Mail', username='me', password=legacy_seal('old pw', self.key),
        )
        self.note = Note.objects.create(user=self.user, title='Diary', content=seal('current', self.key))
        UserProfile.objects.create(user=self.user, one_time_code=legacy_seal('482913', self.key))

    def test_dry_run_changes_nothing(self):
        legacy = self.entry.password
        out = StringIO()
        management.call_command('reseal_legacy', '--dry-run', stdout=out)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.password, legacy)
        self.assertIn('Would re-seal 2 value(s)', out.getvalue())

    def test_legacy_values_are_resealed(self):
        note_before = self.note.content
        out = StringIO()
        management.call_command('reseal_legacy', stdout=out)

        self.entry.refresh_from_db()
        self.note.refresh_from_db()
        self.assertTrue(self.entry.password.startswith('v1:'))
        self.assertEqual(unseal(self.entry.password, self.key), 'old pw')
        self.assertEqual(self.note.content, note_before)
        self.assertEqual(OneTimeCodeService.get_code(self.user), '482913')
        self.assertIn('Re-sealed 2 value(s); 0 could not be opened.', out.getvalue())

    def test_unreadable_values_are_reported(self):
        PasswordEntry.objects.create(user=self.user, title='Junk', username='me', password='not-a-ciphertext')
        out = StringIO()
        management.call_command('reseal_legacy', stdout=out)
        self.assertIn('1 could not be opened', out.getvalue())
