"""Helpers shared by the JSON views of every app."""

from functools import wraps

from django.http import JsonResponse

from core.logging_utils import get_security_logger
from core.middleware import get_client_ip

logger = get_security_logger()


def json_error(message, status=400):
    return JsonResponse({'error': message}, status=status)


def no_store(response):
    """Mark a response that carries decrypted secrets as uncacheable."""
    response['Cache-Control'] = 'no-store, private'
    response['Pragma'] = 'no-cache'
    return response


def api_login_required(view):
    """Answer anonymous callers with a JSON 401 instead of a login redirect."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            logger.warning("Unauthenticated API access attempt", extra_data={
                "path": request.path,
                "ip": get_client_ip(request),
            })
            return json_error('Not authenticated', status=401)
        return view(request, *args, **kwargs)

    return wrapper
