import contextvars
import logging
import uuid
from ipaddress import ip_address, ip_network

from django.conf import settings
from django.http import HttpResponse

from core.logging_utils import get_security_logger
from core.rate_limit import (
    RateLimitScenario,
    increment_rate_limit,
    is_rate_limited,
)

# Per-request logging context, reset when the response leaves the middleware.
_request_context = contextvars.ContextVar('vault_request_context', default=None)


def get_request_context():
    """Return the logging context of the current request, or an empty dict."""
    return _request_context.get() or {}


def _normalize_ip(candidate):
    """Return a cleaned IP address string or ``None`` if invalid."""
    if not candidate:
        return None

    value = candidate.strip().strip('"')
    if value.startswith('for='):
        value = value[4:]
    if value.startswith('[') and ']' in value:
        value = value[1:value.index(']')]
    if value.startswith('::ffff:'):
        value = value[len('::ffff:'):]
    if value.count(':') == 1 and '.' in value:
        value = value.partition(':')[0]

    try:
        return str(ip_address(value))
    except ValueError:
        return None


def _remote_addr_is_trusted(remote_addr):
    cleaned = _normalize_ip(remote_addr)
    if not cleaned:
        return False
    candidate = ip_address(cleaned)
    for network in getattr(settings, 'TRUSTED_PROXY_IPS', ()):
        try:
            if candidate in ip_network(network, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request):
    """
    Return the client IP address for ``request``.

    Forwarding headers are honoured only when the direct peer is listed in
    ``TRUSTED_PROXY_IPS``; otherwise ``REMOTE_ADDR`` is used.
    """
    meta = getattr(request, 'META', None) or {}
    remote_addr = meta.get('REMOTE_ADDR')

    if _remote_addr_is_trusted(remote_addr):
        forwarded_for = meta.get('HTTP_X_FORWARDED_FOR', '')
        for part in forwarded_for.split(','):
            cleaned = _normalize_ip(part)
            if cleaned:
                return cleaned
        cleaned = _normalize_ip(meta.get('HTTP_X_REAL_IP'))
        if cleaned:
            return cleaned

    return _normalize_ip(remote_addr) or 'unknown'


class RequestContextFilter(logging.Filter):
    """Copy the current request context onto every log record."""

    def filter(self, record):
        context = get_request_context()
        record.request_id = context.get('request_id', '-')
        record.user_id = context.get('user_id', 'anonymous')
        record.ip = context.get('ip', 'unknown')
        if context.get('method'):
            record.http_method = context['method']
        if context.get('path'):
            record.path = context['path']
        return True


class LoggingMiddleware:
    """Attach a request id and caller details to log records for the request."""

    header = 'X-Request-ID'

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request_id = request.META.get('HTTP_X_REQUEST_ID') or uuid.uuid4().hex
        request.request_id = request_id

        user = getattr(request, 'user', None)
        user_id = str(user.pk) if getattr(user, 'is_authenticated', False) else 'anonymous'

        token = _request_context.set({
            'request_id': request_id,
            'user_id': user_id,
            'ip': get_client_ip(request),
            'method': request.method,
            'path': request.path,
        })
        try:
            response = self.get_response(request)
        finally:
            _request_context.reset(token)

        response[self.header] = request_id
        return response


class RateLimitMiddleware:
    """Middleware that throttles sensitive and malicious requests."""

    LOGIN_PATH_PREFIX = "/accounts/login"
    PASSWORD_RESET_PATH_PREFIX = "/accounts/password/reset"
    MALICIOUS_PATTERNS = (
        ".env",
        "wp-admin",
        "wp-login.php",
        "phpmyadmin",
        ".git/",
        "etc/passwd",
    )

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = get_security_logger()

    def __call__(self, request):
        client_ip = get_client_ip(request)

        if self._login_is_blocked(request, client_ip):
            return self._too_many_requests("Too many failed login attempts. Please try again later.")

        if self._is_malicious_request(request):
            result = increment_rate_limit(
                RateLimitScenario.MALICIOUS_TRAFFIC_IP, client_ip, limit=3, window=900, block=86400,
            )
            if not result.allowed:
                self.logger.security_event(
                    "Blocked malicious probing after repeated suspicious requests",
                    extra_data={"ip": client_ip, "retry_after": result.retry_after},
                )
                return self._too_many_requests("Suspicious activity detected from your IP.", result.retry_after)

        if request.method == "POST" and request.path.startswith(self.PASSWORD_RESET_PATH_PREFIX):
            response = self._apply_password_reset_limits(request, client_ip)
            if response:
                return response

        return self.get_response(request)

    def _apply_password_reset_limits(self, request, client_ip):
        checks = [(RateLimitScenario.PASSWORD_RESET_IP, client_ip, 3)]
        email = (request.POST.get("email") or "").strip()
        if email:
            checks.append((RateLimitScenario.PASSWORD_RESET_EMAIL, email, 2))

        for scenario, identifier, limit in checks:
            result = increment_rate_limit(scenario, identifier, limit=limit, window=3600, block=14400)
            if not result.allowed:
                self.logger.security_event(
                    "Password reset attempt rate limited",
                    extra_data={"scenario": scenario, "ip": client_ip, "retry_after": result.retry_after},
                )
                return self._too_many_requests(
                    "Too many password reset requests. Please try again later.", result.retry_after,
                )
        return None

    def _login_is_blocked(self, request, client_ip):
        if request.method != "POST" or not request.path.startswith(self.LOGIN_PATH_PREFIX):
            return False

        candidates = [(RateLimitScenario.LOGIN_IP, client_ip)]
        identifier = (request.POST.get("login") or request.POST.get("email") or "").strip().lower()
        if identifier:
            candidates.append((RateLimitScenario.LOGIN_EMAIL, identifier))

        for scenario, value in candidates:
            result = is_rate_limited(scenario, value)
            if not result.allowed:
                self.logger.security_event(
                    "Login blocked by rate limit",
                    extra_data={"scenario": scenario, "ip": client_ip, "retry_after": result.retry_after},
                )
                return True
        return False

    def _is_malicious_request(self, request):
        path = (getattr(request, "path", "") or "").lower()
        return any(pattern in path for pattern in self.MALICIOUS_PATTERNS)

    def _too_many_requests(self, message, retry_after=0):
        response = HttpResponse(message, status=429)
        if retry_after:
            response["Retry-After"] = str(retry_after)
        return response
