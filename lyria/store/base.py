from __future__ import annotations

from datetime import datetime
from typing import ContextManager, Optional, Protocol, Tuple

from lyria.auth.models import Identity, OtpChallenge, Session


class StoreTx(Protocol):
    """
    One unit of work against the credential store.

    Obtained from `CredentialStore.transaction()`; every method runs inside that transaction.
    """

    # Identities
    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_account(self, provider: str, subject: str) -> Optional[Identity]: ...

    def find_or_create_identity(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: bool = False,
        password_hash: Optional[str] = None,
    ) -> Tuple[Identity, bool]:
        """Atomic upsert by email. Returns (identity, created)."""

    def update_profile(
        self,
        identity_id: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Identity:
        """Fill in name/image when currently empty; set email_verified when given."""

    def set_password_hash(self, identity_id: str, password_hash: str) -> None: ...

    def link_account(self, identity_id: str, provider: str, subject: str) -> Identity:
        """Link (or replace the existing link for) `provider` on the identity."""

    # Sessions
    def insert_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_identity_sessions(self, identity_id: str) -> int: ...

    # One-time-code challenges
    def issue_challenge(self, challenge: OtpChallenge) -> None:
        """Invalidate any active challenge for (email, purpose), then insert `challenge`."""

    def get_active_challenge(self, email: str, purpose: str) -> Optional[OtpChallenge]:
        """Return the unconsumed, uninvalidated challenge (locked for update where supported)."""

    def record_failed_attempt(self, challenge_id: str) -> int:
        """Increment and return the attempt counter."""

    def consume_challenge(self, challenge_id: str, consumed_at: datetime) -> None: ...

    # Maintenance
    def purge_expired(self, now: datetime) -> Tuple[int, int]:
        """Delete expired sessions and dead challenges. Returns (sessions, challenges)."""


class CredentialStore(Protocol):
    """
    Process-wide store handle, built once at startup and injected into each component.

    `transaction()` is re-entrant: a nested call joins the outer unit of work. A unit of work
    commits when its body returns or raises an `AuthError` (bookkeeping like attempt counters
    must survive a rejected code) and rolls back on any other exception.
    """

    def transaction(self) -> ContextManager[StoreTx]: ...

    def ping(self) -> None:
        """Raise `StoreUnavailable` if the store cannot be reached."""
