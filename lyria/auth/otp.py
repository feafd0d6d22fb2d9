from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from lyria.auth.config import AuthConfig
from lyria.auth.errors import (
    CodeMismatch,
    ConfigError,
    DeliveryError,
    InvalidCredentials,
    NoActiveChallenge,
    TooManyAttempts,
)
from lyria.auth.mailer import Mailer
from lyria.auth.models import CREATING_PURPOSES, OTP_PURPOSES, Identity, OtpChallenge
from lyria.auth.util import looks_like_email, new_id, normalize_email, utcnow
from lyria.store.base import CredentialStore

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


def generate_code() -> str:
    """Uniform over 000000..999999, zero-padded to six characters."""
    return f"{secrets.randbelow(10**CODE_LENGTH):0{CODE_LENGTH}d}"


def is_well_formed_code(code: str | None) -> bool:
    return bool(code) and len(code) == CODE_LENGTH and code.isascii() and code.isdigit()


class OtpVerifier:
    """
    Issues and checks short-lived numeric codes bound to (email, purpose).

    Codes are never stored in the clear: the store keeps an HMAC of the code keyed by
    the session secret.
    """

    def __init__(
        self,
        cfg: AuthConfig,
        store: CredentialStore,
        mailer: Mailer,
        *,
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        if not cfg.session_secret:
            raise ConfigError("One-time codes need AUTH_SESSION_SECRET")
        self._key = cfg.session_secret.encode("utf-8")
        self._ttl = timedelta(seconds=cfg.otp_ttl_seconds)
        self._max_attempts = cfg.otp_max_attempts
        self._store = store
        self._mailer = mailer
        self._clock = clock
        self._code_factory = code_factory

    def _hash(self, email: str, purpose: str, code: str) -> str:
        msg = f"{purpose}:{email}:{code}".encode("utf-8")
        return hmac.new(self._key, msg, hashlib.sha256).hexdigest()

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in OTP_PURPOSES:
            raise ValueError(f"Unknown one-time-code purpose: {purpose!r}")

    def request_code(self, email: str, purpose: str = "sign-in") -> None:
        """
        Issue a new code for (email, purpose), superseding any active one, and mail it.

        Only `sign-in` codes go to addresses without an account. For the account-only
        purposes an unknown address is accepted silently and nothing is sent, so the
        response never reveals whether an account exists.

        Raises:
            InvalidCredentials: Malformed email
            DeliveryError: If the mailer fails; the new challenge stays active so a resend
                simply supersedes it.
        """
        self._check_purpose(purpose)
        email = normalize_email(email)
        if not looks_like_email(email):
            raise InvalidCredentials("Invalid email address")
        code = self._code_factory()
        now = self._clock()
        challenge = OtpChallenge(
            id=new_id(),
            email=email,
            purpose=purpose,
            code_hash=self._hash(email, purpose, code),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        with self._store.transaction() as tx:
            if purpose not in CREATING_PURPOSES and tx.get_identity_by_email(email) is None:
                logger.info("Skipped %s code for %s: no account", purpose, email)
                return
            tx.issue_challenge(challenge)
        logger.info("Issued %s code for %s (expires %s)", purpose, email, challenge.expires_at.isoformat())

        try:
            self._mailer.send(email, code, purpose)
        except DeliveryError:
            raise
        except Exception as e:
            logger.warning("Mailer raised %s for %s", type(e).__name__, email)
            raise DeliveryError() from e

    def verify_code(self, email: str, purpose: str, code: str) -> Identity:
        """
        Check a code and, on success, consume it and resolve the Identity.

        `sign-in` codes create the Identity when none exists; the other purposes require
        one. Either way a successful code marks the email verified. A failed attempt is
        persisted before the error propagates, including when this call runs inside a
        larger unit of work.

        Raises:
            NoActiveChallenge: No unconsumed, unexpired code exists (or it was already used)
            CodeMismatch: Wrong code; the attempt is counted
            TooManyAttempts: The attempt limit has been reached for this code
            InvalidCredentials: The account behind an account-only code no longer exists
        """
        self._check_purpose(purpose)
        email = normalize_email(email)
        now = self._clock()

        # AuthError raised inside the unit of work commits, so the attempt counter sticks.
        with self._store.transaction() as tx:
            challenge = tx.get_active_challenge(email, purpose)
            if challenge is None or challenge.is_expired(now):
                raise NoActiveChallenge()
            if challenge.attempts >= self._max_attempts:
                raise TooManyAttempts("Too many attempts. Request a new code.")
            if not is_well_formed_code(code) or not hmac.compare_digest(
                challenge.code_hash, self._hash(email, purpose, code)
            ):
                attempts = tx.record_failed_attempt(challenge.id)
                if attempts >= self._max_attempts:
                    logger.warning("Code locked for %s after %d failed attempts", email, attempts)
                    raise TooManyAttempts("Too many attempts. Request a new code.")
                raise CodeMismatch()

            tx.consume_challenge(challenge.id, now)
            if purpose in CREATING_PURPOSES:
                identity, created = tx.find_or_create_identity(email, email_verified=True)
                if created:
                    logger.info("Created identity %s via one-time code", identity.id)
            else:
                identity = tx.get_identity_by_email(email)
                if identity is None:
                    raise InvalidCredentials("Account not found")
            if not identity.email_verified:
                identity = tx.update_profile(identity.id, email_verified=True)
            return identity
