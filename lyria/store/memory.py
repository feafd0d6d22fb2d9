"""In-process credential store for development and tests (fallback when Postgres is not configured)."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterator, Optional, Tuple

from lyria.auth.errors import AuthError
from lyria.auth.models import Identity, LinkedAccount, OtpChallenge, Session
from lyria.auth.util import new_id, normalize_email, utcnow


@dataclass
class _State:
    identities: Dict[str, Identity] = field(default_factory=dict)  # accounts kept separately
    email_index: Dict[str, str] = field(default_factory=dict)
    accounts: Dict[Tuple[str, str], LinkedAccount] = field(default_factory=dict)
    sessions: Dict[str, Session] = field(default_factory=dict)
    challenges: Dict[str, OtpChallenge] = field(default_factory=dict)


class _InMemoryTx:
    """StoreTx over the store's current state. Only used while the store lock is held."""

    def __init__(self, store: "InMemoryCredentialStore") -> None:
        self._store = store

    @property
    def _s(self) -> _State:
        return self._store._state

    def _with_accounts(self, identity: Identity) -> Identity:
        accounts = tuple(
            sorted((a for a in self._s.accounts.values() if a.identity_id == identity.id), key=lambda a: a.provider)
        )
        return replace(identity, accounts=accounts)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        ident = self._s.identities.get(identity_id)
        return self._with_accounts(ident) if ident else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        identity_id = self._s.email_index.get(normalize_email(email))
        return self.get_identity(identity_id) if identity_id else None

    def get_identity_by_account(self, provider: str, subject: str) -> Optional[Identity]:
        acct = self._s.accounts.get((provider, subject))
        return self.get_identity(acct.identity_id) if acct else None

    def find_or_create_identity(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: bool = False,
        password_hash: Optional[str] = None,
    ) -> Tuple[Identity, bool]:
        email = normalize_email(email)
        existing = self.get_identity_by_email(email)
        if existing is not None:
            return existing, False
        now = utcnow()
        ident = Identity(
            id=new_id(),
            email=email,
            created_at=now,
            updated_at=now,
            password_hash=password_hash,
            name=name,
            image=image,
            email_verified=email_verified,
        )
        self._s.identities[ident.id] = ident
        self._s.email_index[email] = ident.id
        return ident, True

    def _require(self, identity_id: str) -> Identity:
        ident = self._s.identities.get(identity_id)
        if ident is None:
            raise KeyError(f"identity not found: {identity_id}")
        return ident

    def update_profile(
        self,
        identity_id: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Identity:
        ident = self._require(identity_id)
        ident = replace(
            ident,
            name=ident.name or name,
            image=ident.image or image,
            email_verified=ident.email_verified if email_verified is None else email_verified,
            updated_at=utcnow(),
        )
        self._s.identities[identity_id] = ident
        return self._with_accounts(ident)

    def set_password_hash(self, identity_id: str, password_hash: str) -> None:
        ident = self._require(identity_id)
        self._s.identities[identity_id] = replace(ident, password_hash=password_hash, updated_at=utcnow())

    def link_account(self, identity_id: str, provider: str, subject: str) -> Identity:
        self._require(identity_id)
        # One account per provider per identity: replace any earlier link.
        for key, acct in list(self._s.accounts.items()):
            if acct.identity_id == identity_id and acct.provider == provider:
                del self._s.accounts[key]
        self._s.accounts[(provider, subject)] = LinkedAccount(
            provider=provider, subject=subject, identity_id=identity_id, created_at=utcnow()
        )
        return self._with_accounts(self._s.identities[identity_id])

    def insert_session(self, session: Session) -> None:
        self._require(session.identity_id)
        self._s.sessions[session.id] = session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._s.sessions.get(session_id)

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> Optional[Session]:
        sess = self._s.sessions.get(session_id)
        if sess is None:
            return None
        sess = replace(sess, expires_at=expires_at)
        self._s.sessions[session_id] = sess
        return sess

    def delete_session(self, session_id: str) -> bool:
        return self._s.sessions.pop(session_id, None) is not None

    def delete_identity_sessions(self, identity_id: str) -> int:
        doomed = [sid for sid, s in self._s.sessions.items() if s.identity_id == identity_id]
        for sid in doomed:
            del self._s.sessions[sid]
        return len(doomed)

    def issue_challenge(self, challenge: OtpChallenge) -> None:
        for cid, c in list(self._s.challenges.items()):
            if c.email == challenge.email and c.purpose == challenge.purpose and c.is_active:
                self._s.challenges[cid] = replace(c, invalidated_at=challenge.issued_at)
        self._s.challenges[challenge.id] = challenge

    def get_active_challenge(self, email: str, purpose: str) -> Optional[OtpChallenge]:
        for c in self._s.challenges.values():
            if c.email == email and c.purpose == purpose and c.is_active:
                return c
        return None

    def record_failed_attempt(self, challenge_id: str) -> int:
        c = self._s.challenges[challenge_id]
        c = replace(c, attempts=c.attempts + 1)
        self._s.challenges[challenge_id] = c
        return c.attempts

    def consume_challenge(self, challenge_id: str, consumed_at: datetime) -> None:
        c = self._s.challenges[challenge_id]
        self._s.challenges[challenge_id] = replace(c, consumed_at=consumed_at)

    def purge_expired(self, now: datetime) -> Tuple[int, int]:
        dead_sessions = [sid for sid, s in self._s.sessions.items() if s.is_expired(now)]
        for sid in dead_sessions:
            del self._s.sessions[sid]
        dead_challenges = [cid for cid, c in self._s.challenges.items() if c.is_expired(now) or not c.is_active]
        for cid in dead_challenges:
            del self._s.challenges[cid]
        return len(dead_sessions), len(dead_challenges)


class InMemoryCredentialStore:
    """
    CredentialStore kept in process memory.

    Transactions are serialized on one re-entrant lock; rollback restores a snapshot taken
    when the outermost transaction began.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = threading.RLock()
        self._local = threading.local()
        self._tx = _InMemoryTx(self)

    def ping(self) -> None:
        return None

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryTx]:
        with self._lock:
            depth = getattr(self._local, "depth", 0)
            if depth:
                # Join the enclosing unit of work.
                self._local.depth = depth + 1
                try:
                    yield self._tx
                finally:
                    self._local.depth = depth
                return

            snapshot = copy.deepcopy(self._state)
            self._local.depth = 1
            try:
                yield self._tx
            except AuthError:
                raise
            except BaseException:
                self._state = snapshot
                raise
            finally:
                self._local.depth = 0
