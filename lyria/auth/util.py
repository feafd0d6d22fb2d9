from __future__ import annotations

import base64
import os
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional
from urllib.parse import urlsplit

LANDING_PATH = "/user/my-songs"
LOGIN_PATH = "/auth/login"


def utcnow() -> datetime:
    """Seam for tests."""
    return datetime.now(timezone.utc)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def looks_like_email(email: str) -> bool:
    local, _, domain = email.partition("@")
    return bool(local) and "." in domain and " " not in email


def localized_path(path: str, locale: Optional[str], *, default_locale: str = "en") -> str:
    """Prefix non-default locales (`/ja/user/my-songs`); the default locale has no prefix."""
    loc = (locale or "").strip().lower()
    if not loc or loc == default_locale:
        return path
    return f"/{loc}{path}"


def landing_path(locale: Optional[str] = None, *, default_locale: str = "en", locales: Iterable[str] = ()) -> str:
    known = set(locales)
    if locale and known and locale.lower() not in known:
        locale = None
    return localized_path(LANDING_PATH, locale, default_locale=default_locale)


def sanitize_next_path(next_path: str | None, default: str = "/") -> str:
    """
    Prevent open-redirects: allow only relative paths like `/user/my-songs`.
    """
    # Strip CR/LF and other control characters first; browsers drop them too.
    p = "".join(ch for ch in (next_path or "") if ch >= " " and ch != "\x7f").strip()
    if not p:
        return default
    if not p.startswith("/"):
        return default
    # Disallow scheme-relative: `//evil.com`, and the `/\evil.com` variant browsers normalize to it.
    if p.startswith("//") or p.startswith("/\\"):
        return default
    try:
        parts = urlsplit(p)
    except ValueError:
        return default
    if parts.scheme or parts.netloc:
        return default
    return p or default
