from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple

from lyria.auth.errors import ConfigError

SUPPORTED_PROVIDERS = ("google", "github", "x")


@dataclass(frozen=True)
class ProviderCredentials:
    """OAuth client registration for one social provider."""

    name: str  # google|github|x
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class AuthConfig:
    # Session configuration
    session_secret: Optional[str]  # Required: signs session tokens and keys OTP hashes
    session_ttl_seconds: int
    cookie_secure: bool
    public_base_url: Optional[str]  # Required when any social provider is enabled

    # One-time codes
    otp_ttl_seconds: int
    otp_max_attempts: int

    # Password sign-in
    password_min_length: int
    password_max_attempts: int
    password_window_seconds: int

    # Social providers (only those with both client id and secret)
    providers: Tuple[ProviderCredentials, ...]

    # Outbound mail
    resend_api_key: Optional[str]
    email_from: str

    # Outbound HTTP timeout for mailer + providers
    http_timeout_seconds: float

    # Post-login landing page
    default_locale: str
    locales: Tuple[str, ...]

    @property
    def enabled_providers(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.providers)

    def provider(self, name: str) -> Optional[ProviderCredentials]:
        for p in self.providers:
            if p.name == name:
                return p
        return None

    @property
    def mailer_enabled(self) -> bool:
        """Real delivery is enabled when an API key is configured (else codes are logged)."""
        return bool(self.resend_api_key)


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    try:
        value = int(float(raw)) if raw else default
    except ValueError:
        value = default
    return max(value, minimum)


def _parse_csv(value: str) -> List[str]:
    items = [x.strip().lower() for x in (value or "").split(",")]
    return [x for x in items if x]


def _load_providers() -> Tuple[ProviderCredentials, ...]:
    out: List[ProviderCredentials] = []
    for name in SUPPORTED_PROVIDERS:
        prefix = name.upper()
        client_id = _env_str(f"{prefix}_CLIENT_ID")
        client_secret = _env_str(f"{prefix}_CLIENT_SECRET")
        # A provider is enabled only when both halves of its credentials are present.
        if client_id and client_secret:
            out.append(ProviderCredentials(name=name, client_id=client_id, client_secret=client_secret))
    return tuple(out)


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Social providers are enabled if both `<PROVIDER>_CLIENT_ID` and `<PROVIDER>_CLIENT_SECRET`
    are set (GOOGLE, GITHUB, X). Password and one-time-code sign-in are always enabled.
    """
    public_base_url = _env_str("AUTH_PUBLIC_BASE_URL")
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = True if (public_base_url or "").startswith("https://") else False

    locales = tuple(_parse_csv(os.getenv("AUTH_LOCALES", "") or "en,ja,fr,de,es"))
    default_locale = (_env_str("AUTH_DEFAULT_LOCALE") or "en").lower()

    timeout_raw = (os.getenv("AUTH_HTTP_TIMEOUT_SECONDS", "") or "").strip()
    try:
        http_timeout = float(timeout_raw) if timeout_raw else 10.0
    except ValueError:
        http_timeout = 10.0

    return AuthConfig(
        session_secret=_env_str("AUTH_SESSION_SECRET"),
        session_ttl_seconds=_env_int("AUTH_SESSION_TTL_SECONDS", 7 * 24 * 3600, 60),  # 7d default
        cookie_secure=cookie_secure,
        public_base_url=public_base_url.rstrip("/") if public_base_url else None,
        otp_ttl_seconds=_env_int("AUTH_OTP_TTL_SECONDS", 300, 60),
        otp_max_attempts=_env_int("AUTH_OTP_MAX_ATTEMPTS", 5, 1),
        password_min_length=_env_int("AUTH_PASSWORD_MIN_LENGTH", 8, 1),
        password_max_attempts=_env_int("AUTH_PASSWORD_MAX_ATTEMPTS", 5, 1),
        password_window_seconds=_env_int("AUTH_PASSWORD_WINDOW_SECONDS", 300, 1),
        providers=_load_providers(),
        resend_api_key=_env_str("RESEND_API_KEY"),
        email_from=_env_str("EMAIL_FROM") or "LyriaSong <noreply@lyriasong.com>",
        http_timeout_seconds=http_timeout if http_timeout > 0 else 10.0,
        default_locale=default_locale,
        locales=locales or (default_locale,),
    )


def validate_auth_config(cfg: AuthConfig) -> None:
    """
    Fail fast on settings that enabled features cannot run without.

    Raises:
        ConfigError: naming every missing setting
    """
    missing: List[str] = []
    if not cfg.session_secret:
        missing.append("AUTH_SESSION_SECRET")
    if cfg.providers and not cfg.public_base_url:
        missing.append(f"AUTH_PUBLIC_BASE_URL (required by providers: {', '.join(cfg.enabled_providers)})")
    if missing:
        raise ConfigError("Missing required auth configuration: " + "; ".join(missing))
