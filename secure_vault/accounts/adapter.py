from allauth.account.adapter import DefaultAccountAdapter
from allauth.socialaccount.adapter import DefaultSocialAccountAdapter
from django.db import transaction
from accounts.one_time_code import OneTimeCodeService
from core.logging_utils import get_accounts_logger
from core.middleware import get_client_ip
from vault.exceptions import CryptoError

logger = get_accounts_logger()


class VaultAccountAdapter(DefaultAccountAdapter):
    """
    Account adapter that provisions the one-time verification code together
    with the user row and logs authentication events.
    """

    def save_user(self, request, user, form, commit=True):
        if not commit:
            return super().save_user(request, user, form, commit=False)

        try:
            with transaction.atomic():
                user = super().save_user(request, user, form, commit=True)
                OneTimeCodeService.ensure_profile(user)
        except CryptoError as e:
            logger.critical("One-time code provisioning failed during registration",
                            extra_data={"error": str(e)})
            raise

        logger.user_activity("registration_completed", user, "User registered with verification code")
        return user

    def authenticate(self, request, **credentials):
        email = credentials.get('email') or credentials.get('username')
        user = super().authenticate(request, **credentials)

        if user:
            logger.user_activity("successful_login", user, "User authenticated successfully")
        else:
            logger.security_event("Login failed - Invalid credentials", extra_data={
                "email": email,
                "ip": get_client_ip(request),
            })
        return user

    def logout(self, request):
        if request.user.is_authenticated:
            logger.user_activity("logout", request.user, "User logged out")
        return super().logout(request)

    def is_open_for_signup(self, request):
        is_open = super().is_open_for_signup(request)
        if not is_open:
            logger.security_event("Registration attempt when signup is closed", extra_data={
                "ip": get_client_ip(request)
            })
        return is_open


class VaultSocialAccountAdapter(DefaultSocialAccountAdapter):
    """OAuth sign-ups get their one-time code the same way password sign-ups do."""

    def save_user(self, request, sociallogin, form=None):
        with transaction.atomic():
            user = super().save_user(request, sociallogin, form)
            OneTimeCodeService.ensure_profile(user)
        logger.user_activity("oauth_registration_completed", user,
                             f"Provider: {sociallogin.account.provider}")
        return user
