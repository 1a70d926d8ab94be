from django.http import JsonResponse
from django.shortcuts import redirect

from core.logging_utils import get_core_logger
from core.middleware import get_client_ip

logger = get_core_logger()


def home(request):
    """Landing payload telling the client whether a session is active."""
    logger.info("Home accessed", extra_data={"ip": get_client_ip(request)})
    user_email = ""

    if request.user.is_authenticated:
        logger.user_activity("home_access", request.user)
        user_email = request.user.email

    return JsonResponse({
        "authenticated": request.user.is_authenticated,
        "user_email": user_email,
    })


def root(request):
    logger.info("Root redirect accessed", extra_data={"ip": get_client_ip(request)})
    return redirect("/home/")
