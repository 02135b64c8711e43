from django.conf import settings
from django.contrib.auth import logout
from django.shortcuts import render, redirect
from django.views.decorators.http import require_POST
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode
import logging

logger = logging.getLogger(__name__)


def landing_page(request):
    if request.user.is_authenticated:
        return redirect("dashboard:dashboard")
    return render(request, "authentication/login.html", {})


@require_POST
def logout_user(request):
    if request.user.is_authenticated:
        logger.info(f"User {request.user.username} logged out")
    logout(request)
    return redirect("landing")


def connect_google(request):
    initial_next = request.GET.get("next", "/dashboard/")

    parts      = urlparse(initial_next)
    query_dict = parse_qs(parts.query)
    query_dict["resume"] = ["true"]           # overwrite/add exactly once

    new_query = urlencode(query_dict, doseq=True)
    next_url  = urlunparse(parts._replace(query=new_query))
    scopes = ["openid", "profile", "email"] + list(settings.GOOGLE_CALENDAR_SCOPES)
    params = [
        ("scope", " ".join(scopes)),
        ("process", "connect" if request.user.is_authenticated else "login"),
        ("prompt", "consent"), # to get new refresh tokens
        ("access_type", "offline"), # ensure refresh_token is issued
        ("next", next_url),
    ]
    return redirect(f"/accounts/google/login/?{urlencode(params)}")
