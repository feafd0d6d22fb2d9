from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Mapping, Optional, Tuple

from lyria.auth.config import AuthConfig, load_auth_config, validate_auth_config
from lyria.auth.local import PasswordAuthenticator, check_password_strength
from lyria.auth.mailer import Mailer, build_mailer
from lyria.auth.models import Identity, IssuedSession, SessionMetadata
from lyria.auth.otp import OtpVerifier
from lyria.auth.rate_limit import RateLimiter
from lyria.auth.session import SessionManager
from lyria.auth.social import OAuthProvider, ProviderCallback, SocialBroker, SocialRedirect
from lyria.auth.util import landing_path, sanitize_next_path, utcnow
from lyria.store.base import CredentialStore
from lyria.store.config import StoreConfig, build_store, load_store_config

logger = logging.getLogger(__name__)


class AuthService:
    """
    Wires the credential store, session manager and the three sign-in paths together.

    Every sign-in that ends with a session runs as one unit of work: if the session
    cannot be created, the consumed code (or the new identity/link) is rolled back too.
    """

    def __init__(
        self,
        cfg: AuthConfig,
        store: CredentialStore,
        mailer: Mailer,
        *,
        providers: Optional[Mapping[str, OAuthProvider]] = None,
        clock: Callable[[], datetime] = utcnow,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self._clock = clock
        self.sessions = SessionManager(cfg, store, clock=clock)
        self.otp = OtpVerifier(cfg, store, mailer, clock=clock)
        self.passwords = PasswordAuthenticator(
            cfg,
            store,
            limiter
            or RateLimiter(
                max_attempts=cfg.password_max_attempts, window_seconds=cfg.password_window_seconds, clock=clock
            ),
        )
        self.social = SocialBroker(cfg, store, providers)

    @property
    def enabled_providers(self) -> Tuple[str, ...]:
        return self.social.enabled_providers

    # --- return paths -------------------------------------------------------

    def landing_path(self, locale: Optional[str] = None) -> str:
        return landing_path(locale, default_locale=self.cfg.default_locale, locales=self.cfg.locales)

    def resolve_return_path(self, return_path: Optional[str], locale: Optional[str] = None) -> str:
        """Where to go after sign-in: a same-site relative path, else the landing page."""
        return sanitize_next_path(return_path, self.landing_path(locale))

    # --- one-time code ------------------------------------------------------

    def request_code(self, email: str, purpose: str = "sign-in") -> None:
        self.otp.request_code(email, purpose)

    def sign_in_with_code(
        self,
        email: str,
        code: str,
        *,
        purpose: str = "sign-in",
        metadata: Optional[SessionMetadata] = None,
    ) -> Tuple[Identity, IssuedSession]:
        with self.store.transaction():
            identity = self.otp.verify_code(email, purpose, code)
            issued = self.sessions.create_session(identity.id, metadata)
        logger.info("Identity %s signed in with a one-time code", identity.id)
        return identity, issued

    def reset_password_with_code(
        self,
        email: str,
        code: str,
        new_password: str,
        *,
        metadata: Optional[SessionMetadata] = None,
    ) -> Tuple[Identity, IssuedSession]:
        """
        Set a new password with a `forget-password` code, sign out every session of the
        identity and hand back a fresh one.

        Raises:
            WeakPassword: Checked before the code is spent
            NoActiveChallenge, CodeMismatch, TooManyAttempts: As for sign-in codes
        """
        check_password_strength(new_password, self.cfg.password_min_length)
        with self.store.transaction():
            identity = self.otp.verify_code(email, "forget-password", code)
            self.passwords.reset_password(identity, new_password)
            self.sessions.revoke_identity_sessions(identity.id)
            issued = self.sessions.create_session(identity.id, metadata)
        return self.sessions.validate_session(issued.token) or identity, issued

    def verify_email_with_code(self, email: str, code: str) -> Identity:
        """Mark an existing identity's email verified with an `email-verification` code."""
        identity = self.otp.verify_code(email, "email-verification", code)
        logger.info("Email verified for identity %s", identity.id)
        return identity

    # --- password -----------------------------------------------------------

    def sign_in_with_password(
        self, email: str, password: str, *, metadata: Optional[SessionMetadata] = None
    ) -> Tuple[Identity, IssuedSession]:
        identity = self.passwords.authenticate(email, password)
        return identity, self.sessions.create_session(identity.id, metadata)

    def sign_up_with_password(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
    ) -> Tuple[Identity, IssuedSession]:
        with self.store.transaction():
            identity = self.passwords.sign_up(email, password, name)
            issued = self.sessions.create_session(identity.id, metadata)
        return identity, issued

    def change_password(
        self,
        identity_id: str,
        current_password: Optional[str],
        new_password: str,
        *,
        metadata: Optional[SessionMetadata] = None,
    ) -> IssuedSession:
        """
        Set a new password, sign out every session of the identity, and hand back a
        fresh session for the caller.
        """
        with self.store.transaction():
            self.passwords.change_password(identity_id, current_password, new_password)
            self.sessions.revoke_identity_sessions(identity_id)
            return self.sessions.create_session(identity_id, metadata)

    # --- social -------------------------------------------------------------

    def begin_social_sign_in(
        self, provider: str, return_path: Optional[str], *, locale: Optional[str] = None
    ) -> SocialRedirect:
        return self.social.begin_social_sign_in(provider, return_path, default_path=self.landing_path(locale))

    def complete_social_sign_in(
        self, callback: ProviderCallback, *, metadata: Optional[SessionMetadata] = None
    ) -> Tuple[Identity, IssuedSession]:
        # Provider round-trips stay outside the unit of work.
        provider, profile = self.social.fetch_callback_profile(callback)
        with self.store.transaction():
            identity = self.social.resolve_identity(provider, profile)
            issued = self.sessions.create_session(identity.id, metadata)
        logger.info("Identity %s signed in with %s", identity.id, provider)
        return identity, issued

    # --- sessions -----------------------------------------------------------

    def current_identity(self, token: Optional[str]) -> Optional[Identity]:
        return self.sessions.validate_session(token)

    def sign_out(self, token: Optional[str]) -> None:
        self.sessions.destroy_session(token)

    def purge_expired(self) -> Tuple[int, int]:
        """Delete expired sessions and stale challenges; returns (sessions, challenges)."""
        with self.store.transaction() as tx:
            sessions, challenges = tx.purge_expired(self._clock())
        logger.info("Purged %d expired session(s) and %d stale challenge(s)", sessions, challenges)
        return sessions, challenges


def build_auth_service(cfg: Optional[AuthConfig] = None, store_cfg: Optional[StoreConfig] = None) -> AuthService:
    """
    Build the process-wide service from environment configuration.

    Raises:
        ConfigError: Required settings are missing
        StoreUnavailable: The credential store cannot be built or reached
    """
    cfg = cfg or load_auth_config()
    validate_auth_config(cfg)
    store = build_store(store_cfg or load_store_config())
    store.ping()
    return AuthService(cfg, store, build_mailer(cfg))
