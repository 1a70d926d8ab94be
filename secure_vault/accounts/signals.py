"""
Signal handlers for django-allauth events: audit logging, login throttling and
provisioning of the one-time verification code.
"""

from django.dispatch import receiver
from django.contrib.auth.signals import user_logged_in, user_logged_out, user_login_failed
from allauth.account.signals import (
    user_signed_up, password_reset, password_changed, password_set,
)
from allauth.socialaccount.signals import social_account_added
from accounts.one_time_code import OneTimeCodeService
from accounts.verification import VerificationSession
from core.logging_utils import get_accounts_logger
from core.middleware import get_client_ip
from core.rate_limit import (
    RateLimitScenario,
    increment_rate_limit,
    reset_rate_limit,
)

logger = get_accounts_logger()


@receiver(user_logged_in)
def provision_code_on_login(sender, request, user, **kwargs):
    """Ensure the profile code exists and cache it for this session"""
    ip = get_client_ip(request) if request else "unknown"
    logger.user_activity("user_logged_in_signal", user, f"User login signal received from IP: {ip}")

    OneTimeCodeService.ensure_profile(user)
    if request is not None and hasattr(request, 'session'):
        VerificationSession(request.session, user).prime()

    if ip and ip != 'unknown':
        reset_rate_limit(RateLimitScenario.LOGIN_IP, ip)
    if getattr(user, 'email', None):
        reset_rate_limit(RateLimitScenario.LOGIN_EMAIL, user.email)


@receiver(user_logged_out)
def log_user_logout(sender, request, user, **kwargs):
    if user:
        logger.user_activity("user_logged_out_signal", user, "User logout signal received")
    else:
        logger.info("Anonymous user logout signal received", extra_data={"ip": get_client_ip(request)})


@receiver(user_login_failed)
def log_login_failure(sender, credentials, request=None, **kwargs):
    """Log failed login attempts and feed the login throttles"""
    email = credentials.get('username') or credentials.get('email', 'unknown')
    ip = get_client_ip(request) if request else "unknown"
    logger.security_event("Login failed", extra_data={
        "email": email,
        "ip": ip,
        "credentials_keys": list(credentials.keys())
    })
    if ip and ip != 'unknown':
        increment_rate_limit(RateLimitScenario.LOGIN_IP, ip, limit=10, window=600, block=1800)
    if email and email != 'unknown':
        increment_rate_limit(RateLimitScenario.LOGIN_EMAIL, email, limit=6, window=600, block=1800)


@receiver(user_signed_up)
def provision_code_on_signup(sender, request, user, **kwargs):
    ip = get_client_ip(request) if request else "unknown"
    logger.user_activity("user_signed_up", user, f"User registration signal received from IP: {ip}")
    OneTimeCodeService.ensure_profile(user)


@receiver(social_account_added)
def log_social_account_added(sender, request, sociallogin, **kwargs):
    logger.user_activity("social_account_added", sociallogin.user,
                         f"Linked provider: {sociallogin.account.provider}")


@receiver(password_reset)
def log_password_reset(sender, request, user, **kwargs):
    logger.security_event("Password reset completed", user, extra_data={"ip": get_client_ip(request)})


@receiver(password_changed)
def log_password_changed(sender, request, user, **kwargs):
    logger.security_event("Password changed", user, extra_data={"ip": get_client_ip(request)})


@receiver(password_set)
def log_password_set(sender, request, user, **kwargs):
    logger.user_activity("password_set", user, f"Password set for user from IP: {get_client_ip(request)}")
