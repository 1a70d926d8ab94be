"""
Re-seal values written in the legacy ciphertext format with the current codec.
Safe to run repeatedly: values already in the current format are skipped.
"""

from django.core.management.base import BaseCommand
from django.db import transaction

from accounts.models import UserProfile
from vault.codec import is_legacy_ciphertext, key_material_for, reseal
from vault.exceptions import DecryptionError
from vault.models import Note, PasswordEntry

# model, sealed column
TARGETS = (
    (PasswordEntry, 'password'),
    (Note, 'content'),
    (UserProfile, 'one_time_code'),
)


class Command(BaseCommand):
    help = 'Re-seal legacy-format passwords, note bodies and one-time codes'

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='Report what would change without writing')

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        resealed = failed = 0

        for model, column in TARGETS:
            rows = model.objects.select_related('user').exclude(**{column: ''})
            for row in rows.iterator():
                value = getattr(row, column)
                if not is_legacy_ciphertext(value):
                    continue
                try:
                    new_value = reseal(value, key_material_for(row.user))
                except DecryptionError as e:
                    failed += 1
                    self.stdout.write(self.style.ERROR(f'✗ {model.__name__} {row.pk}: {e}'))
                    continue

                if not dry_run:
                    with transaction.atomic():
                        model.objects.filter(pk=row.pk, **{column: value}).update(**{column: new_value})
                resealed += 1
                self.stdout.write(f'✓ {model.__name__} {row.pk}')

        verb = 'Would re-seal' if dry_run else 'Re-sealed'
        style = self.style.WARNING if failed else self.style.SUCCESS
        self.stdout.write(style(f'{verb} {resealed} value(s); {failed} could not be opened.'))
