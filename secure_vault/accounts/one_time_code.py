"""Generation and persistence of the per-account one-time verification code."""

import secrets
from typing import Optional

from django.db import transaction
from django.utils import timezone

from accounts.models import UserProfile
from core.logging_utils import get_accounts_logger
from vault.codec import key_material_for, seal, unseal
from vault.exceptions import DecryptionError

CODE_LENGTH = 6
_CODE_FLOOR = 10 ** (CODE_LENGTH - 1)

logger = get_accounts_logger()


def generate_code() -> str:
    """Return a random six digit code without a leading zero."""
    return str(_CODE_FLOOR + secrets.randbelow(9 * _CODE_FLOOR))


class OneTimeCodeService:
    """Reads and writes the sealed code stored on the user's profile row."""

    @staticmethod
    @transaction.atomic
    def ensure_profile(user) -> UserProfile:
        """
        Create the profile (and its code) on first login.

        An existing code is never replaced. Two sessions logging in at the same
        time serialise on the profile row lock.
        """
        profile, created = UserProfile.objects.select_for_update().get_or_create(user=user)
        if profile.one_time_code:
            return profile

        profile.one_time_code = seal(generate_code(), key_material_for(user))
        profile.code_shown = False
        profile.code_generated_at = timezone.now()
        profile.save(update_fields=['one_time_code', 'code_shown', 'code_generated_at', 'updated_at'])

        logger.user_activity("one_time_code_generated", user, "created" if created else "backfilled")
        return profile

    @staticmethod
    def get_code(user) -> Optional[str]:
        profile = UserProfile.objects.filter(user=user).first()
        if profile is None or not profile.one_time_code:
            return None
        try:
            return unseal(profile.one_time_code, key_material_for(user))
        except DecryptionError:
            logger.encryption_event("one-time code could not be unsealed", user, success=False)
            raise

    @staticmethod
    def pending_display(user) -> Optional[str]:
        """Return the code only while it has never been shown to the user."""
        profile = UserProfile.objects.filter(user=user).first()
        if profile is None or profile.code_shown:
            return None
        return OneTimeCodeService.get_code(user)

    @staticmethod
    def mark_shown(user) -> bool:
        updated = UserProfile.objects.filter(user=user).update(code_shown=True, updated_at=timezone.now())
        if updated:
            logger.user_activity("one_time_code_acknowledged", user)
        else:
            logger.warning("No profile to mark one-time code as shown", user)
        return bool(updated)
