from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeSerializer

from lyria.auth.config import AuthConfig
from lyria.auth.errors import ConfigError, InvalidCredentials
from lyria.auth.models import Identity, IssuedSession, Session, SessionMetadata
from lyria.auth.util import random_token, utcnow
from lyria.store.base import CredentialStore

logger = logging.getLogger(__name__)

SESSION_SALT = "lyria-session-v1"


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-lyria_session" if cfg.cookie_secure else "lyria_session"


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


class SessionManager:
    """
    Creates, validates and destroys server-side sessions.

    The browser only ever holds the session id signed with the session secret, so a
    forged or truncated cookie is rejected before touching the store. Expiry is a fixed
    TTL from creation; validation never extends it.
    """

    def __init__(
        self,
        cfg: AuthConfig,
        store: CredentialStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not cfg.session_secret:
            raise ConfigError("Session signing is not configured (AUTH_SESSION_SECRET)")
        self._cfg = cfg
        self._store = store
        self._clock = clock
        self._serializer = URLSafeSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._cfg.session_ttl_seconds)

    def encode_token(self, session_id: str) -> str:
        return self._serializer.dumps(session_id)

    def decode_token(self, token: str | None) -> Optional[str]:
        if not token:
            return None
        try:
            value = self._serializer.loads(token)
        except BadSignature:
            return None
        if not isinstance(value, str) or not value:
            return None
        return value

    def create_session(self, identity_id: str, metadata: Optional[SessionMetadata] = None) -> IssuedSession:
        """
        Persist a new session for an existing identity.

        Raises:
            InvalidCredentials: If the identity does not exist
        """
        meta = metadata or SessionMetadata()
        now = self._clock()
        session = Session(
            id=random_token(32),
            identity_id=identity_id,
            created_at=now,
            expires_at=now + self.ttl,
            user_agent=meta.user_agent[:512] if meta.user_agent else None,
            ip_address=meta.ip_address or None,
        )
        with self._store.transaction() as tx:
            if tx.get_identity(identity_id) is None:
                raise InvalidCredentials("Account not found")
            tx.insert_session(session)
        logger.info("Session created for identity %s (expires %s)", identity_id, session.expires_at.isoformat())
        return IssuedSession(session=session, token=self.encode_token(session.id))

    def validate_session(self, token: str | None) -> Optional[Identity]:
        """Resolve a token to its Identity; None for missing, tampered, unknown or expired sessions."""
        session_id = self.decode_token(token)
        if session_id is None:
            return None
        now = self._clock()
        with self._store.transaction() as tx:
            session = tx.get_session(session_id)
            if session is None:
                return None
            if session.is_expired(now):
                tx.delete_session(session_id)
                return None
            return tx.get_identity(session.identity_id)

    def get_session(self, token: str | None) -> Optional[Session]:
        session_id = self.decode_token(token)
        if session_id is None:
            return None
        with self._store.transaction() as tx:
            session = tx.get_session(session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    def renew_session(self, token: str | None) -> Optional[Session]:
        """Explicitly re-issue the expiry of a still-valid session (never called implicitly)."""
        session_id = self.decode_token(token)
        if session_id is None:
            return None
        now = self._clock()
        with self._store.transaction() as tx:
            session = tx.get_session(session_id)
            if session is None or session.is_expired(now):
                return None
            return tx.update_session_expiry(session_id, now + self.ttl)

    def destroy_session(self, token: str | None) -> None:
        session_id = self.decode_token(token)
        if session_id is None:
            return
        with self._store.transaction() as tx:
            if tx.delete_session(session_id):
                logger.info("Session destroyed")

    def revoke_identity_sessions(self, identity_id: str) -> int:
        with self._store.transaction() as tx:
            n = tx.delete_identity_sessions(identity_id)
        if n:
            logger.info("Revoked %d session(s) for identity %s", n, identity_id)
        return n
