"""
Account deletion: a password + one-time code gate in front of a multi-step saga.

The saga removes the user's data in a fixed order and keeps going when a step
fails, so a partial failure leaves as little behind as possible. Every step is
a filtered delete, which makes re-running the saga after a failure safe.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from django.contrib.auth import authenticate, get_user_model, logout

from accounts.exceptions import AccountDeletionError
from accounts.models import UserProfile
from accounts.one_time_code import generate_code
from accounts.verification import INVALID_CODE_MESSAGE, codes_match
from core.audit import get_audit_logger
from core.logging_utils import get_accounts_logger

logger = get_accounts_logger()

INCORRECT_PASSWORD_MESSAGE = "Incorrect password. Please try again."
NO_CODE_MESSAGE = "No verification code generated"
DELETION_FAILED_MESSAGE = "Failed to delete account completely"

SESSION_STAGE_KEY = 'account_deletion_stage'
SESSION_CODE_KEY = 'account_deletion_code'

AUTH_STEP = 'auth_user'


@dataclass(frozen=True)
class DeletionStepResult:
    step: str
    succeeded: bool
    detail: str = ''


@dataclass
class DeletionReport:
    user_id: str
    steps: List[DeletionStepResult] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return all(step.succeeded for step in self.steps)

    @property
    def failed_steps(self) -> List[str]:
        return [step.step for step in self.steps if not step.succeeded]

    def step(self, name) -> Optional[DeletionStepResult]:
        return next((step for step in self.steps if step.step == name), None)

    def as_dict(self):
        return {
            'user_id': self.user_id,
            'completed': self.completed,
            'steps': [
                {'step': step.step, 'succeeded': step.succeeded, 'detail': step.detail}
                for step in self.steps
            ],
        }


class AccountDeletionService:
    """Removes every trace of a user, one independent step at a time."""

    @staticmethod
    def _steps(user, object_store) -> List[Tuple[str, Callable[[], str]]]:
        # Imported here: the vault app depends on accounts at import time.
        from vault.models import Note, PasswordEntry, StoredFile

        def delete_rows(model):
            def run():
                deleted, _ = model.objects.filter(user_id=user.pk).delete()
                return f"{deleted} row(s) removed"
            return run

        def remove_objects():
            paths = object_store.list(f"{user.pk}/")
            if paths:
                object_store.remove(paths)
            return f"{len(paths)} object(s) removed"

        def delete_user():
            deleted, _ = get_user_model().objects.filter(pk=user.pk).delete()
            return "auth record removed" if deleted else "auth record already absent"

        return [
            ('profile', delete_rows(UserProfile)),
            ('files', delete_rows(StoredFile)),
            ('notes', delete_rows(Note)),
            ('passwords', delete_rows(PasswordEntry)),
            ('storage', remove_objects),
            (AUTH_STEP, delete_user),
        ]

    @staticmethod
    def delete_account(user, object_store=None) -> DeletionReport:
        if object_store is None:
            from vault.object_storage import get_object_store
            object_store = get_object_store()

        report = DeletionReport(user_id=str(user.pk))
        logger.security_event("Account deletion started", user)

        for name, run in AccountDeletionService._steps(user, object_store):
            try:
                detail = run()
            except Exception as e:
                logger.error(f"Account deletion step '{name}' failed", user,
                             extra_data={"step": name, "error": str(e)})
                report.steps.append(DeletionStepResult(name, False, str(e)))
            else:
                report.steps.append(DeletionStepResult(name, True, detail))

        AccountDeletionService._audit(report)

        auth_step = report.step(AUTH_STEP)
        if auth_step is None or not auth_step.succeeded:
            logger.critical("Account deletion could not remove the auth record", user,
                            extra_data={"failed_steps": report.failed_steps})
            raise AccountDeletionError(DELETION_FAILED_MESSAGE, report=report)

        if report.completed:
            logger.security_event("Account deleted", extra_data={"user_id": report.user_id})
        else:
            logger.warning("Account deleted with leftovers",
                           extra_data={"user_id": report.user_id, "failed_steps": report.failed_steps})
        return report

    @staticmethod
    def _audit(report: DeletionReport) -> None:
        event = 'account_deleted' if report.completed else 'account_deletion_incomplete'
        try:
            get_audit_logger().log_event(
                event,
                severity='INFO' if report.completed else 'WARNING',
                user_id=report.user_id,
                metadata=report.as_dict(),
            )
        except OSError as e:
            logger.critical("Unable to write account deletion audit entry",
                            extra_data={"user_id": report.user_id, "error": str(e)})


class DeletionStage:
    IDLE = 'idle'
    AWAITING_CODE = 'awaiting_code'
    AUTHORIZED = 'authorized'


class AccountDeletionFlow:
    """
    Session-backed gate in front of :meth:`AccountDeletionService.delete_account`.

    The deletion code is minted on password verification, shown inline, and
    kept only in the session under its own key. It never touches the profile's
    reveal code.
    """

    def __init__(self, request):
        self.request = request
        self.session = request.session
        self.user = request.user
        self.error: Optional[str] = None

    @property
    def stage(self) -> str:
        return self.session.get(SESSION_STAGE_KEY, DeletionStage.IDLE)

    def verify_password(self, password) -> Optional[str]:
        self.error = None
        authenticated = authenticate(self.request, username=self.user.email, password=password or '')
        if authenticated is None or authenticated.pk != self.user.pk:
            self.error = INCORRECT_PASSWORD_MESSAGE
            logger.verification_event("deletion_password_check", self.user, success=False)
            return None

        code = generate_code()
        self.session[SESSION_CODE_KEY] = code
        self.session[SESSION_STAGE_KEY] = DeletionStage.AWAITING_CODE
        logger.verification_event("deletion_password_check", self.user, success=True)
        return code

    def submit_code(self, code, object_store=None) -> Optional[DeletionReport]:
        self.error = None
        expected = self.session.get(SESSION_CODE_KEY)
        if not expected:
            self.error = NO_CODE_MESSAGE
            return None

        if not codes_match(code, expected):
            self.error = INVALID_CODE_MESSAGE
            logger.verification_event("deletion_code_submitted", self.user, success=False)
            return None

        self.session[SESSION_STAGE_KEY] = DeletionStage.AUTHORIZED
        logger.verification_event("deletion_code_submitted", self.user, success=True)

        try:
            report = AccountDeletionService.delete_account(self.user, object_store=object_store)
        except AccountDeletionError:
            self.error = DELETION_FAILED_MESSAGE
            raise

        logout(self.request)
        return report

    def cancel(self) -> None:
        self.error = None
        self.session.pop(SESSION_CODE_KEY, None)
        self.session.pop(SESSION_STAGE_KEY, None)
