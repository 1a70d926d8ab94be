import io

from django.core.exceptions import ObjectDoesNotExist, ValidationError
from django.http import FileResponse, JsonResponse
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from accounts.exceptions import GateStateError
from accounts.one_time_code import OneTimeCodeService
from accounts.verification import VerificationSession
from core.http import api_login_required, json_error, no_store
from core.logging_utils import get_vault_logger
from vault.exceptions import CryptoError, DecryptionError, ObjectStoreError
from vault.file_service import FileService
from vault.models import PasswordEntry, StoredFile
from vault.note_service import NoteService, NoteView, open_notes
from vault.password_service import PasswordProxy, PasswordService
from vault.queries import distinct_categories, distinct_tags, filter_notes, sort_notes
from vault.schemas import (
    FileMetadataUpdate,
    NoteInput,
    NoteUpdate,
    PasswordInput,
    PasswordUpdate,
)

logger = get_vault_logger()

NOT_FOUND_MESSAGE = 'Item does not exist or you do not have permission to access it'


def _dispatch(request, handler, *args):
    """Run a handler and translate domain failures into JSON errors."""
    try:
        return handler(request, *args)
    except ValidationError as e:
        return json_error('; '.join(e.messages))
    except ObjectDoesNotExist:
        logger.security_event("Access to missing or foreign vault item", request.user, extra_data={
            "path": request.path,
            "item_id": request.POST.get('id') or (args[0] if args else None),
        })
        return json_error(NOT_FOUND_MESSAGE, status=404)
    except GateStateError as e:
        return json_error(str(e), status=409)
    except CryptoError as e:
        logger.encryption_event(f"vault request failed: {e}", request.user, success=False)
        logger.critical("Encryption error in vault request", request.user)
        return json_error('Unable to decrypt stored data', status=500)
    except ObjectStoreError as e:
        logger.error("Object store request failed", request.user, extra_data={"error": str(e)})
        return json_error(str(e), status=502)


def _dispatch_action(request, action_handlers):
    action = request.POST.get('action', 'create')
    handler = action_handlers.get(action)
    if handler is None:
        return json_error(f"Unknown action: {action}")
    logger.user_activity(f"vault_action_{action}", request.user, request.path)
    return _dispatch(request, handler)


# Dashboard

def _pending_code(user):
    try:
        return OneTimeCodeService.pending_display(user)
    except DecryptionError:
        logger.critical("Stored one-time code is unreadable", user)
        return None


@api_login_required
@require_GET
def dashboard(request):
    user = request.user
    response = JsonResponse({
        'counts': {
            'passwords': PasswordEntry.objects.filter(user=user).count(),
            'notes': NoteService.list_notes(user, NoteView.ACTIVE).count(),
            'files': StoredFile.objects.filter(user=user).count(),
        },
        'security_score': PasswordService.security_score(user),
        'pending_code': _pending_code(user),
        'recent_passwords': [
            {'id': str(entry.id), 'title': entry.title, 'username': entry.username}
            for entry in PasswordEntry.objects.filter(user=user)[:5]
        ],
        'recent_files': [
            {'id': str(stored.id), 'name': stored.name, 'size': stored.size}
            for stored in StoredFile.objects.filter(user=user)[:5]
        ],
    })
    return no_store(response)


# Passwords

def _handle_create_password(request):
    entry = PasswordService.create(request.user, PasswordInput.from_data(request.POST))
    return JsonResponse({'password': PasswordProxy(request.user, entry).as_dict()}, status=201)


def _handle_edit_password(request):
    entry = PasswordService.update(request.user, request.POST.get('id'), PasswordUpdate.from_data(request.POST))
    return JsonResponse({'password': PasswordProxy(request.user, entry).as_dict()})


def _handle_delete_password(request):
    entry_id = request.POST.get('id')
    PasswordService.delete(request.user, entry_id)
    VerificationSession(request.session, request.user).forget(entry_id)
    return JsonResponse({'deleted': entry_id})


def _list_passwords(request):
    user = request.user
    revealed = set(VerificationSession(request.session, user).revealed_ids())
    entries = PasswordService.list_entries(
        user,
        search=request.GET.get('search', ''),
        category=request.GET.get('category', ''),
    )
    items = [
        PasswordProxy(user, entry).as_dict(revealed=str(entry.id) in revealed)
        for entry in entries
    ]
    return no_store(JsonResponse({
        'passwords': items,
        'categories': distinct_categories(PasswordEntry.objects.filter(user=user).only('category')),
    }))


@api_login_required
@require_http_methods(["GET", "POST"])
def passwords(request):
    if request.method == "POST":
        return _dispatch_action(request, {
            'create': _handle_create_password,
            'edit': _handle_edit_password,
            'delete': _handle_delete_password,
        })
    return _dispatch(request, _list_passwords)


def _reveal(request, entry_id):
    user = request.user
    entry = PasswordService.get_entry(user, entry_id)
    verification = VerificationSession(request.session, user)
    action = request.POST.get('action')

    if action == 'request':
        gate = verification.request_reveal(entry.id)
    elif action == 'submit':
        gate = verification.submit_code(entry.id, request.POST.get('code', ''))
    elif action == 'cancel':
        gate = verification.cancel(entry.id)
    elif action == 'hide':
        gate = verification.hide(entry.id)
    elif action == 'toggle':
        gate = verification.toggle(entry.id)
    else:
        return json_error(f"Unknown action: {action}")

    payload = {'gate': gate.to_dict()}
    if gate.is_revealed:
        payload['password'] = PasswordService.reveal(user, entry)
    return no_store(JsonResponse(payload, status=200 if not gate.error else 400))


@api_login_required
@require_POST
def password_reveal(request, entry_id):
    return _dispatch(request, _reveal, entry_id)


# Notes

def _handle_create_note(request):
    note = NoteService.create(request.user, NoteInput.from_data(request.POST))
    return no_store(JsonResponse({'note': open_notes(request.user, [note])[0].as_dict()}, status=201))


def _handle_edit_note(request):
    note = NoteService.update(request.user, request.POST.get('id'), NoteUpdate.from_data(request.POST))
    return no_store(JsonResponse({'note': open_notes(request.user, [note])[0].as_dict()}))


def _note_state_handler(operation):
    def handler(request):
        note = operation(request.user, request.POST.get('id'))
        return JsonResponse({'id': str(note.id), 'archived_at': note.archived_at, 'deleted_at': note.deleted_at})
    return handler


def _handle_delete_note(request):
    note_id = request.POST.get('id')
    NoteService.permanently_delete(request.user, note_id)
    return JsonResponse({'deleted': note_id})


def _handle_empty_trash(request):
    return JsonResponse({'deleted': NoteService.empty_trash(request.user)})


def _list_notes(request):
    user = request.user
    view = request.GET.get('view', NoteView.ACTIVE)
    if view not in NoteView.CHOICES:
        raise ValidationError(f"view must be one of {', '.join(NoteView.CHOICES)}")

    opened = open_notes(user, NoteService.list_notes(user, view))
    selected = filter_notes(
        opened,
        search=request.GET.get('search', ''),
        category=request.GET.get('category', ''),
        tag=request.GET.get('tag', ''),
    )
    if view == NoteView.ACTIVE or 'sort' in request.GET:
        selected = sort_notes(selected, request.GET.get('sort', 'date'), request.GET.get('order', 'desc'))

    return no_store(JsonResponse({
        'view': view,
        'notes': [note.as_dict() for note in selected],
        'categories': distinct_categories(opened),
        'tags': distinct_tags(opened),
    }))


@api_login_required
@require_http_methods(["GET", "POST"])
def notes(request):
    if request.method == "POST":
        return _dispatch_action(request, {
            'create': _handle_create_note,
            'edit': _handle_edit_note,
            'archive': _note_state_handler(NoteService.archive),
            'unarchive': _note_state_handler(NoteService.unarchive),
            'trash': _note_state_handler(NoteService.move_to_trash),
            'restore': _note_state_handler(NoteService.restore_from_trash),
            'delete': _handle_delete_note,
            'empty_trash': _handle_empty_trash,
        })
    return _dispatch(request, _list_notes)


# Files

def _file_dict(stored):
    return {
        'id': str(stored.id),
        'name': stored.name,
        'content_type': stored.content_type,
        'size': stored.size,
        'path': stored.path,
        'notes': stored.notes,
        'category': stored.category,
        'created_at': stored.created_at.isoformat() if stored.created_at else None,
    }


def _handle_upload_file(request):
    uploaded = request.FILES.get('file')
    if uploaded is None:
        raise ValidationError('A file is required')
    stored = FileService.upload(request.user, uploaded, FileMetadataUpdate.from_data(request.POST))
    return JsonResponse({'file': _file_dict(stored)}, status=201)


def _handle_edit_file(request):
    stored = FileService.update(request.user, request.POST.get('id'), FileMetadataUpdate.from_data(request.POST))
    return JsonResponse({'file': _file_dict(stored)})


def _handle_delete_file(request):
    file_id = request.POST.get('id')
    FileService.delete(request.user, file_id)
    return JsonResponse({'deleted': file_id})


def _list_files(request):
    user = request.user
    stored = FileService.list_files(
        user,
        search=request.GET.get('search', ''),
        category=request.GET.get('category', ''),
    )
    return JsonResponse({
        'files': [_file_dict(item) for item in stored],
        'categories': distinct_categories(StoredFile.objects.filter(user=user).only('category')),
    })


@api_login_required
@require_http_methods(["GET", "POST"])
def files(request):
    if request.method == "POST":
        return _dispatch_action(request, {
            'upload': _handle_upload_file,
            'edit': _handle_edit_file,
            'delete': _handle_delete_file,
        })
    return _dispatch(request, _list_files)


def _download(request, file_id):
    download = FileService.download(request.user, file_id)
    response = FileResponse(
        io.BytesIO(download.content),
        as_attachment=True,
        filename=download.name,
        content_type=download.content_type,
    )
    return no_store(response)


@api_login_required
@require_GET
def file_download(request, file_id):
    return _dispatch(request, _download, file_id)
