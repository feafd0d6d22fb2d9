from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

OTP_PURPOSES = ("sign-in", "email-verification", "forget-password")
# Purposes whose code may create the identity; the rest need an existing account.
CREATING_PURPOSES = ("sign-in",)


@dataclass(frozen=True)
class LinkedAccount:
    """A social provider account linked to an Identity."""

    provider: str  # google|github|x
    subject: str  # provider-side user id
    identity_id: str
    created_at: datetime


@dataclass(frozen=True)
class Identity:
    """A user of the site, keyed by (lowercased) email."""

    id: str
    email: str
    created_at: datetime
    updated_at: datetime
    password_hash: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = False
    accounts: Tuple[LinkedAccount, ...] = ()

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def providers(self) -> Tuple[str, ...]:
        return tuple(sorted(a.provider for a in self.accounts))

    def account_for(self, provider: str) -> Optional[LinkedAccount]:
        for a in self.accounts:
            if a.provider == provider:
                return a
        return None


@dataclass(frozen=True)
class SessionMetadata:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class Session:
    """Server-side session record. Only `expires_at` may change (explicit renewal)."""

    id: str
    identity_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session plus the signed token handed to the browser."""

    session: Session
    token: str


@dataclass(frozen=True)
class OtpChallenge:
    id: str
    email: str
    purpose: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    consumed_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.consumed_at is None and self.invalidated_at is None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at
