from typing import Dict, Optional

from core.logging_utils import get_vault_logger
from core.security_controls import get_reveal_rate_monitor
from vault.codec import key_material_for, seal, unseal
from vault.exceptions import DecryptionError
from vault.models import PasswordEntry
from vault.queries import filter_passwords, get_owned
from vault.queries import security_score as score_passwords
from vault.schemas import PasswordInput, PasswordUpdate

logger = get_vault_logger()

MASK = '••••••••'


class PasswordService:
    """Stored credentials. The password column always holds sealed text."""

    @staticmethod
    def list_entries(user, search='', category=''):
        return filter_passwords(PasswordEntry.objects.filter(user=user), search, category)

    @staticmethod
    def get_entry(user, entry_id) -> PasswordEntry:
        return get_owned(PasswordEntry, user, entry_id)

    @staticmethod
    def create(user, data: PasswordInput) -> PasswordEntry:
        entry = PasswordEntry.objects.create(
            user=user,
            title=data.title,
            username=data.username,
            password=seal(data.password, key_material_for(user)),
            url=data.url,
            notes=data.notes,
            category=data.category,
        )
        logger.user_activity("password_created", user, f"Created password entry {entry.id}")
        return entry

    @staticmethod
    def update(user, entry_id, changes: PasswordUpdate) -> PasswordEntry:
        entry = PasswordService.get_entry(user, entry_id)

        values = changes.changes()
        if 'password' in values:
            values['password'] = seal(values['password'], key_material_for(user))

        for name, value in values.items():
            setattr(entry, name, value)
        entry.save(update_fields=[*values, 'updated_at'])

        logger.user_activity("password_updated", user, f"Updated {', '.join(sorted(values))} on {entry.id}")
        return entry

    @staticmethod
    def delete(user, entry_id) -> None:
        entry = PasswordService.get_entry(user, entry_id)
        entry.delete()
        logger.user_activity("password_deleted", user, f"Deleted password entry {entry_id}")

    @staticmethod
    def reveal(user, entry: PasswordEntry) -> str:
        """Unseal the stored password and feed the reveal rate monitor."""
        try:
            plaintext = unseal(entry.password, key_material_for(user))
        except DecryptionError:
            logger.encryption_event(f"password {entry.id} could not be unsealed", user, success=False)
            raise

        if get_reveal_rate_monitor().record(user.pk):
            logger.critical("Unusual number of password reveals", user)
        logger.encryption_event(f"password {entry.id} unsealed", user)
        return plaintext

    @staticmethod
    def security_score(user) -> int:
        """Dashboard strength score. Unreadable entries are left out."""
        key_material = key_material_for(user)
        plaintexts = []
        for entry in PasswordEntry.objects.filter(user=user).only('id', 'password'):
            try:
                plaintexts.append(unseal(entry.password, key_material))
            except DecryptionError:
                logger.encryption_event(f"password {entry.id} skipped in security score", user, success=False)
        return score_passwords(plaintexts)


class PasswordProxy:
    """
    Read-only view of an entry. The password is only unsealed when the
    caller asks for it, and at most once per proxy.
    """

    def __init__(self, user, entry: PasswordEntry):
        self.user = user
        self.entry = entry
        self._plaintext: Optional[str] = None

    @property
    def id(self):
        return self.entry.id

    @property
    def password(self) -> str:
        if self._plaintext is None:
            self._plaintext = PasswordService.reveal(self.user, self.entry)
        return self._plaintext

    def as_dict(self, revealed: bool = False) -> Dict[str, object]:
        entry = self.entry
        return {
            'id': str(entry.id),
            'title': entry.title,
            'username': entry.username,
            'password': self.password if revealed else MASK,
            'revealed': revealed,
            'url': entry.url,
            'notes': entry.notes,
            'category': entry.category,
            'created_at': entry.created_at.isoformat() if entry.created_at else None,
            'updated_at': entry.updated_at.isoformat() if entry.updated_at else None,
        }
