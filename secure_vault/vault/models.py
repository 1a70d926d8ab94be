import uuid
from django.db import models
from django.conf import settings


class PasswordEntry(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='password_entries')

    title = models.CharField(max_length=200)
    username = models.CharField(max_length=255)
    password = models.TextField()  # sealed with vault.codec
    url = models.CharField(max_length=2048, blank=True, default='')
    notes = models.TextField(blank=True, default='')
    category = models.CharField(max_length=100, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        db_table = 'vault_password'

    def __str__(self):
        return f"PasswordEntry {self.id} ({self.title})"


class Note(models.Model):
    DEFAULT_BACKGROUND = '#ffffff'
    DEFAULT_FONT_FAMILY = 'JetBrains Mono'
    DEFAULT_FONT_SIZE = '16px'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notes')

    title = models.CharField(max_length=200)
    subtitle = models.CharField(max_length=300, blank=True, default='')
    content = models.TextField(blank=True, default='')  # sealed with vault.codec
    category = models.CharField(max_length=100, blank=True, default='')
    tags = models.JSONField(default=list, blank=True)
    background_color = models.CharField(max_length=32, default=DEFAULT_BACKGROUND)
    font_family = models.CharField(max_length=100, default=DEFAULT_FONT_FAMILY)
    font_size = models.CharField(max_length=16, default=DEFAULT_FONT_SIZE)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    archived_at = models.DateTimeField(null=True, blank=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-updated_at']
        db_table = 'vault_note'

    def __str__(self):
        return f"Note {self.id} ({self.title})"

    @property
    def is_archived(self):
        return self.archived_at is not None

    @property
    def is_trashed(self):
        return self.deleted_at is not None


class StoredFile(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='stored_files')

    name = models.CharField(max_length=255)
    content_type = models.CharField(max_length=255, blank=True, default='application/octet-stream')
    size = models.BigIntegerField(default=0)
    path = models.CharField(max_length=1024, unique=True)  # "<user id>/<name>" in the object store
    notes = models.TextField(blank=True, default='')
    category = models.CharField(max_length=100, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        db_table = 'vault_file'

    def __str__(self):
        return f"StoredFile {self.id} ({self.name})"
