import os
from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError

from core.logging_utils import get_vault_logger
from vault.models import StoredFile
from vault.object_storage import BaseObjectStore, get_object_store
from vault.queries import filter_files, get_owned
from vault.schemas import FileMetadataUpdate

logger = get_vault_logger()

DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class Download:
    name: str
    content_type: str
    content: bytes


def object_path(user, name: str) -> str:
    return f"{user.pk}/{name}"


def clean_file_name(name) -> str:
    cleaned = os.path.basename(str(name or '').replace('\\', '/')).strip()
    if not cleaned or cleaned in ('.', '..'):
        raise ValidationError('A file name is required')
    max_length = StoredFile._meta.get_field('name').max_length
    if len(cleaned) > max_length:
        raise ValidationError(f"name must be at most {max_length} characters")
    return cleaned


class FileService:
    """
    Uploaded files: bytes in the object store under ``<user id>/<name>``,
    metadata in a ``StoredFile`` row.
    """

    @staticmethod
    def _store(object_store) -> BaseObjectStore:
        return object_store or get_object_store()

    @staticmethod
    def list_files(user, search='', category=''):
        return filter_files(StoredFile.objects.filter(user=user), search, category)

    @staticmethod
    def get_file(user, file_id) -> StoredFile:
        return get_owned(StoredFile, user, file_id)

    @staticmethod
    def upload(user, uploaded, metadata: FileMetadataUpdate, object_store=None) -> StoredFile:
        """
        Store the object first, then the row. If the row cannot be written the
        object is removed again so no orphan is left behind.
        """
        store = FileService._store(object_store)
        name = clean_file_name(getattr(uploaded, 'name', ''))
        max_bytes = int(getattr(settings, 'VAULT_MAX_UPLOAD_BYTES', DEFAULT_MAX_UPLOAD_BYTES))
        if uploaded.size > max_bytes:
            raise ValidationError(f"Files may be at most {max_bytes} bytes")

        path = object_path(user, name)
        content_type = getattr(uploaded, 'content_type', None) or 'application/octet-stream'
        store.upload(path, uploaded.read(), content_type)

        try:
            stored = StoredFile.objects.create(
                user=user,
                name=name,
                content_type=content_type,
                size=uploaded.size,
                path=path,
                notes=metadata.notes or '',
                category=metadata.category or '',
            )
        except DatabaseError as e:
            logger.error("File row insert failed, removing uploaded object", user,
                         extra_data={"path": path, "error": str(e)})
            store.remove([path])
            raise

        logger.user_activity("file_uploaded", user, f"Stored file {stored.id} ({stored.size} bytes)")
        return stored

    @staticmethod
    def update(user, file_id, changes: FileMetadataUpdate) -> StoredFile:
        stored = FileService.get_file(user, file_id)
        values = changes.changes()
        for name, value in values.items():
            setattr(stored, name, value)
        if values:
            stored.save(update_fields=list(values))
        logger.user_activity("file_updated", user, f"Updated metadata on {stored.id}")
        return stored

    @staticmethod
    def delete(user, file_id, object_store=None) -> None:
        stored = FileService.get_file(user, file_id)
        FileService._store(object_store).remove([stored.path])
        stored.delete()
        logger.user_activity("file_deleted", user, f"Deleted file {file_id}")

    @staticmethod
    def download(user, file_id, object_store=None) -> Download:
        stored = FileService.get_file(user, file_id)
        content = FileService._store(object_store).download(stored.path)
        logger.user_activity("file_downloaded", user, f"Downloaded file {stored.id}")
        return Download(name=stored.name, content_type=stored.content_type, content=content)
