from typing import Dict, List, Optional

from django.utils import timezone

from core.logging_utils import get_vault_logger
from vault.codec import key_material_for, seal, unseal
from vault.exceptions import DecryptionError
from vault.models import Note
from vault.queries import get_owned
from vault.schemas import NoteInput, NoteUpdate

logger = get_vault_logger()


class NoteView:
    ACTIVE = 'active'
    ARCHIVED = 'archived'
    TRASH = 'trash'

    CHOICES = (ACTIVE, ARCHIVED, TRASH)


class NoteService:
    """Notes with a sealed body, moving between active, archived and trash."""

    @staticmethod
    def list_notes(user, view: str = NoteView.ACTIVE):
        notes = Note.objects.filter(user=user)
        if view == NoteView.ACTIVE:
            return notes.filter(archived_at__isnull=True, deleted_at__isnull=True).order_by('-updated_at')
        if view == NoteView.ARCHIVED:
            return notes.filter(archived_at__isnull=False, deleted_at__isnull=True).order_by('-archived_at')
        if view == NoteView.TRASH:
            return notes.filter(deleted_at__isnull=False).order_by('-deleted_at')
        raise ValueError(f"Unknown note view: {view}")

    @staticmethod
    def get_note(user, note_id) -> Note:
        return get_owned(Note, user, note_id)

    @staticmethod
    def create(user, data: NoteInput) -> Note:
        note = Note.objects.create(
            user=user,
            title=data.title,
            subtitle=data.subtitle,
            content=seal(data.content, key_material_for(user)),
            category=data.category,
            tags=list(data.tags),
            background_color=data.background_color,
            font_family=data.font_family,
            font_size=data.font_size,
        )
        logger.user_activity("note_created", user, f"Created note {note.id}")
        return note

    @staticmethod
    def update(user, note_id, changes: NoteUpdate) -> Note:
        note = NoteService.get_note(user, note_id)

        values = changes.changes()
        if 'content' in values:
            # Re-sealed even when empty so the column never holds plaintext.
            values['content'] = seal(values['content'], key_material_for(user))

        for name, value in values.items():
            setattr(note, name, value)
        note.save(update_fields=[*values, 'updated_at'])

        logger.user_activity("note_updated", user, f"Updated {', '.join(sorted(values))} on {note.id}")
        return note

    @staticmethod
    def _stamp(user, note_id, field: str, value, action: str) -> Note:
        note = NoteService.get_note(user, note_id)
        setattr(note, field, value)
        note.save(update_fields=[field])
        logger.user_activity(action, user, f"Note {note.id}")
        return note

    @staticmethod
    def archive(user, note_id) -> Note:
        return NoteService._stamp(user, note_id, 'archived_at', timezone.now(), "note_archived")

    @staticmethod
    def unarchive(user, note_id) -> Note:
        return NoteService._stamp(user, note_id, 'archived_at', None, "note_unarchived")

    @staticmethod
    def move_to_trash(user, note_id) -> Note:
        return NoteService._stamp(user, note_id, 'deleted_at', timezone.now(), "note_trashed")

    @staticmethod
    def restore_from_trash(user, note_id) -> Note:
        return NoteService._stamp(user, note_id, 'deleted_at', None, "note_restored")

    @staticmethod
    def permanently_delete(user, note_id) -> None:
        note = NoteService.get_note(user, note_id)
        note.delete()
        logger.user_activity("note_deleted", user, f"Permanently deleted note {note_id}")

    @staticmethod
    def empty_trash(user) -> int:
        deleted, _ = Note.objects.filter(user=user, deleted_at__isnull=False).delete()
        logger.user_activity("trash_emptied", user, f"{deleted} note(s) removed")
        return deleted

    @staticmethod
    def read_content(user, note: Note) -> str:
        try:
            return unseal(note.content, key_material_for(user))
        except DecryptionError:
            logger.encryption_event(f"note {note.id} could not be unsealed", user, success=False)
            raise


class NoteProxy:
    """A note with its body opened on first access."""

    def __init__(self, user, note: Note):
        self.user = user
        self.note = note
        self._content: Optional[str] = None
        self.unreadable = False

    def __getattr__(self, name):
        return getattr(self.note, name)

    @property
    def content(self) -> str:
        if self._content is None:
            try:
                self._content = NoteService.read_content(self.user, self.note)
            except DecryptionError:
                self.unreadable = True
                self._content = ''
        return self._content

    def as_dict(self) -> Dict[str, object]:
        note = self.note
        content = self.content
        return {
            'id': str(note.id),
            'title': note.title,
            'subtitle': note.subtitle,
            'content': None if self.unreadable else content,
            'unreadable': self.unreadable,
            'category': note.category,
            'tags': list(note.tags or []),
            'background_color': note.background_color,
            'font_family': note.font_family,
            'font_size': note.font_size,
            'created_at': _iso(note.created_at),
            'updated_at': _iso(note.updated_at),
            'archived_at': _iso(note.archived_at),
            'deleted_at': _iso(note.deleted_at),
        }


def open_notes(user, notes) -> List[NoteProxy]:
    return [NoteProxy(user, note) for note in notes]


def _iso(value):
    return value.isoformat() if value else None
