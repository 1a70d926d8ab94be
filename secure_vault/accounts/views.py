"""Profile, one-time code and account deletion endpoints plus allauth overrides."""

from django.contrib import messages
from django.contrib.auth import logout
from django.http import JsonResponse
from django.shortcuts import redirect
from django.views.decorators.http import require_http_methods, require_POST
from allauth.account.views import (
    PasswordResetFromKeyView,
    INTERNAL_RESET_SESSION_KEY,
)
from accounts.deletion import AccountDeletionFlow
from accounts.exceptions import AccountDeletionError
from accounts.models import UserProfile
from accounts.one_time_code import OneTimeCodeService
from accounts.verification import VerificationSession
from core.http import api_login_required, json_error, no_store
from core.logging_utils import get_accounts_logger
from vault.exceptions import DecryptionError
from vault.schemas import CONTROL_FIELDS

logger = get_accounts_logger()

PROFILE_FIELD_LIMITS = {'full_name': 200, 'phone': 32}


class HardenedPasswordResetFromKeyView(PasswordResetFromKeyView):
    """Ensure invalid password reset links cannot expose the reset form."""

    def render_to_response(self, context, **response_kwargs):
        if context.get("token_fail"):
            # Stale token data must not survive a failed attempt.
            self.request.session.pop(INTERNAL_RESET_SESSION_KEY, None)
            messages.error(
                self.request,
                "The password reset link is invalid or has expired. "
                "Please request a new password reset email.",
            )
            return redirect('account_reset_password')
        return super().render_to_response(context, **response_kwargs)


def logout_page(request):
    if request.user.is_authenticated:
        VerificationSession(request.session, request.user).clear()
        logger.user_activity("logout", request.user)
    logout(request)
    return redirect('account_login')


def _profile_payload(user):
    profile = UserProfile.objects.filter(user=user).first()
    return {
        'id': str(user.pk),
        'email': user.email,
        'full_name': user.full_name,
        'phone': user.phone,
        'code_shown': bool(profile and profile.code_shown),
        'code_generated_at': profile.code_generated_at.isoformat() if profile and profile.code_generated_at else None,
    }


@api_login_required
@require_http_methods(["GET", "POST"])
def profile_view(request):
    user = request.user

    if request.method == "POST":
        unknown = set(request.POST.keys()) - set(PROFILE_FIELD_LIMITS) - CONTROL_FIELDS
        if unknown:
            return json_error(f"Unknown field(s): {', '.join(sorted(unknown))}")

        changed = []
        for name, limit in PROFILE_FIELD_LIMITS.items():
            if name not in request.POST:
                continue
            value = request.POST[name].strip()
            if len(value) > limit:
                return json_error(f"{name} must be at most {limit} characters")
            setattr(user, name, value)
            changed.append(name)

        if changed:
            user.save(update_fields=changed)
            logger.user_activity("profile_updated", user, ", ".join(changed))

    return JsonResponse({'profile': _profile_payload(user)})


@api_login_required
@require_http_methods(["GET", "POST"])
def one_time_code_view(request):
    """GET returns the code while it was never shown; POST acknowledges it."""
    if request.method == "POST":
        OneTimeCodeService.mark_shown(request.user)
        return JsonResponse({'acknowledged': True})

    try:
        code = OneTimeCodeService.pending_display(request.user)
    except DecryptionError:
        logger.critical("Stored one-time code is unreadable", request.user)
        return json_error('Unable to read verification code', status=500)

    return no_store(JsonResponse({'code': code, 'pending': code is not None}))


def _handle_verify_password(request, flow):
    code = flow.verify_password(request.POST.get('password'))
    if code is None:
        return json_error(flow.error)
    return no_store(JsonResponse({'stage': flow.stage, 'code': code}))


def _handle_submit_code(request, flow):
    try:
        report = flow.submit_code(request.POST.get('code'))
    except AccountDeletionError as e:
        return JsonResponse({'error': flow.error, 'report': e.report.as_dict() if e.report else None}, status=500)

    if report is None:
        return json_error(flow.error)
    return JsonResponse({'deleted': True, 'report': report.as_dict()})


def _handle_cancel(request, flow):
    flow.cancel()
    return JsonResponse({'stage': flow.stage})


@api_login_required
@require_POST
def delete_account_view(request):
    action = request.POST.get('action')

    action_handlers = {
        'verify_password': _handle_verify_password,
        'submit_code': _handle_submit_code,
        'cancel': _handle_cancel,
    }

    handler = action_handlers.get(action)
    if handler is None:
        return json_error(f"Unknown action: {action}")

    logger.user_activity("account_deletion_action", request.user, action)
    return handler(request, AccountDeletionFlow(request))
