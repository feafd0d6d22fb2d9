from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

import bcrypt

from lyria.auth.config import AuthConfig
from lyria.auth.errors import AccountExists, InvalidCredentials, TooManyAttempts, WeakPassword
from lyria.auth.models import Identity
from lyria.auth.rate_limit import RateLimiter
from lyria.auth.util import looks_like_email, normalize_email
from lyria.store.base import CredentialStore

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes; longer inputs are rejected rather than truncated.
MAX_PASSWORD_BYTES = 72
BCRYPT_ROUNDS = 12


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.

    Args:
        password: Plain text password
        password_hash: Bcrypt hash

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Invalid hash format, or a password bcrypt refuses (over 72 bytes).
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Compared against when the email is unknown so both paths cost one bcrypt check.
    return hash_password("lyria-dummy-password")


def check_password_strength(password: str, min_length: int) -> None:
    if len(password or "") < min_length:
        raise WeakPassword(f"Password must be at least {min_length} characters")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise WeakPassword(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")


class PasswordAuthenticator:
    """
    Email + password sign-in, sign-up and password change.

    Failed sign-ins share the one-time-code discipline: after `password_max_attempts`
    failures inside the window, further attempts fail with TooManyAttempts.
    """

    def __init__(self, cfg: AuthConfig, store: CredentialStore, limiter: Optional[RateLimiter] = None) -> None:
        self._cfg = cfg
        self._store = store
        self._limiter = limiter or RateLimiter(
            max_attempts=cfg.password_max_attempts, window_seconds=cfg.password_window_seconds
        )

    def authenticate(self, email: str, password: str) -> Identity:
        """
        Check email + password.

        Raises:
            InvalidCredentials: Unknown email, no password set, or wrong password
            TooManyAttempts: Attempt limit reached for this email
        """
        email = normalize_email(email)
        if not email or not password:
            raise InvalidCredentials("Missing email or password")

        allowed, remaining = self._limiter.check_and_increment(email)
        if not allowed:
            logger.warning("Password sign-in rate limited for %s", email)
            raise TooManyAttempts("Too many failed sign-in attempts. Please try again later.")

        with self._store.transaction() as tx:
            identity = tx.get_identity_by_email(email)

        stored_hash = identity.password_hash if identity and identity.password_hash else None
        ok = verify_password(password, stored_hash or _dummy_hash()) and stored_hash is not None
        if not ok or identity is None:
            logger.info("Password sign-in failed for %s (%d attempts remaining)", email, remaining)
            if remaining <= 0:
                raise TooManyAttempts("Too many failed sign-in attempts. Please try again later.")
            raise InvalidCredentials(f"Invalid email or password ({remaining} attempts remaining)")

        self._limiter.reset(email)
        logger.info("Password sign-in succeeded for identity %s", identity.id)
        return identity

    def sign_up(self, email: str, password: str, name: Optional[str] = None) -> Identity:
        """
        Create an identity with a password.

        Raises:
            InvalidCredentials: Malformed email
            WeakPassword: Password outside the allowed length
            AccountExists: An identity already owns this email (any sign-in path)
        """
        email = normalize_email(email)
        if not looks_like_email(email):
            raise InvalidCredentials("Invalid email address")
        check_password_strength(password, self._cfg.password_min_length)
        password_hash = hash_password(password)

        with self._store.transaction() as tx:
            identity, created = tx.find_or_create_identity(
                email, name=(name or "").strip() or None, password_hash=password_hash
            )
            if not created:
                # Never attach a password to an account created by another path: that would
                # let anyone who knows the email take it over.
                raise AccountExists()
        logger.info("Created identity %s via password sign-up", identity.id)
        return identity

    def change_password(self, identity_id: str, current_password: Optional[str], new_password: str) -> None:
        """
        Set a new password. Callers revoke the identity's sessions afterwards.

        Raises:
            InvalidCredentials: Current password does not match (when one is set)
            WeakPassword: New password outside the allowed length
        """
        check_password_strength(new_password, self._cfg.password_min_length)
        with self._store.transaction() as tx:
            identity = tx.get_identity(identity_id)
            if identity is None:
                raise InvalidCredentials("Account not found")
            if identity.password_hash and not verify_password(current_password or "", identity.password_hash):
                raise InvalidCredentials("Current password is incorrect")
            tx.set_password_hash(identity_id, hash_password(new_password))
        logger.info("Password changed for identity %s", identity_id)

    def reset_password(self, identity: Identity, new_password: str) -> None:
        """Replace the password of an identity that proved mailbox ownership; clears the lockout."""
        check_password_strength(new_password, self._cfg.password_min_length)
        with self._store.transaction() as tx:
            tx.set_password_hash(identity.id, hash_password(new_password))
        self._limiter.reset(identity.email)
        logger.info("Password reset for identity %s", identity.id)
