from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse

from lyria.auth.errors import StoreUnavailable
from lyria.auth.models import Identity
from lyria.auth.service import AuthService
from lyria.auth.session import session_cookie_name
from lyria.auth.util import LOGIN_PATH, localized_path, sanitize_next_path


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        raise StoreUnavailable("Auth service is not initialized")
    return service


def session_token(request: Request) -> Optional[str]:
    service = get_auth_service(request)
    return request.cookies.get(session_cookie_name(service.cfg))


def get_current_identity(request: Request) -> Optional[Identity]:
    """
    Resolve the signed-in Identity for a request, or None when anonymous.

    The auth middleware resolves it once per request; handlers outside the middleware
    fall back to reading the session cookie.
    """
    if getattr(request.state, "identity_resolved", False):
        return getattr(request.state, "identity", None)
    identity = get_auth_service(request).current_identity(session_token(request))
    request.state.identity = identity
    request.state.identity_resolved = True
    return identity


def login_redirect(
    return_path: Optional[str], locale: Optional[str] = None, *, default_locale: str = "en"
) -> RedirectResponse:
    """302 to the (locale-aware) login page, carrying where to come back to."""
    target = localized_path(LOGIN_PATH, locale, default_locale=default_locale)
    next_path = sanitize_next_path(return_path, "")
    if next_path:
        target = f"{target}?{urlencode({'next': next_path})}"
    resp = RedirectResponse(url=target, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp
