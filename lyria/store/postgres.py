from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence, Tuple

from lyria.auth.errors import AuthError, StoreUnavailable
from lyria.auth.models import Identity, LinkedAccount, OtpChallenge, Session
from lyria.auth.util import new_id, normalize_email

logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = "id, email, created_at, updated_at, password_hash, name, image, email_verified"
_SESSION_COLUMNS = "id, identity_id, created_at, expires_at, user_agent, ip_address"
_CHALLENGE_COLUMNS = "id, email, purpose, code_hash, issued_at, expires_at, attempts, consumed_at, invalidated_at"


def _session_from_row(row: Sequence[Any]) -> Session:
    sid, identity_id, created_at, expires_at, user_agent, ip_address = row
    return Session(
        id=str(sid),
        identity_id=str(identity_id),
        created_at=created_at,
        expires_at=expires_at,
        user_agent=user_agent,
        ip_address=ip_address,
    )


def _challenge_from_row(row: Sequence[Any]) -> OtpChallenge:
    cid, email, purpose, code_hash, issued_at, expires_at, attempts, consumed_at, invalidated_at = row
    return OtpChallenge(
        id=str(cid),
        email=str(email),
        purpose=str(purpose),
        code_hash=str(code_hash),
        issued_at=issued_at,
        expires_at=expires_at,
        attempts=int(attempts or 0),
        consumed_at=consumed_at,
        invalidated_at=invalidated_at,
    )


class _PostgresTx:
    """StoreTx bound to one open psycopg connection (inside its transaction)."""

    def __init__(self, conn) -> None:
        self._conn = conn

    def _identity(self, where: str, params: Tuple[Any, ...]) -> Optional[Identity]:
        row = self._conn.execute(f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE {where};", params).fetchone()
        if not row:
            return None
        iid, email, created_at, updated_at, password_hash, name, image, email_verified = row
        accounts = self._conn.execute(
            """
            SELECT provider, subject, identity_id, created_at
            FROM linked_accounts
            WHERE identity_id = %s
            ORDER BY provider;
            """,
            (iid,),
        ).fetchall()
        return Identity(
            id=str(iid),
            email=str(email),
            created_at=created_at,
            updated_at=updated_at,
            password_hash=password_hash,
            name=name,
            image=image,
            email_verified=bool(email_verified),
            accounts=tuple(
                LinkedAccount(provider=str(p), subject=str(s), identity_id=str(i), created_at=c)
                for (p, s, i, c) in accounts
            ),
        )

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._identity("id = %s", (identity_id,))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._identity("lower(email) = %s", (normalize_email(email),))

    def get_identity_by_account(self, provider: str, subject: str) -> Optional[Identity]:
        row = self._conn.execute(
            "SELECT identity_id FROM linked_accounts WHERE provider = %s AND subject = %s;",
            (provider, subject),
        ).fetchone()
        if not row:
            return None
        return self.get_identity(str(row[0]))

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
        row = self._conn.execute(
            """
            INSERT INTO identities (id, email, email_verified, password_hash, name, image)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT ((lower(email))) DO NOTHING
            RETURNING id;
            """,
            (new_id(), email, email_verified, password_hash, name, image),
        ).fetchone()
        ident = self.get_identity_by_email(email)
        if ident is None:
            raise RuntimeError(f"identity upsert returned no row for {email}")
        return ident, row is not None

    def update_profile(
        self,
        identity_id: str,
        *,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Identity:
        self._conn.execute(
            """
            UPDATE identities
            SET name = COALESCE(name, %s),
                image = COALESCE(image, %s),
                email_verified = COALESCE(%s, email_verified),
                updated_at = now()
            WHERE id = %s;
            """,
            (name, image, email_verified, identity_id),
        )
        ident = self.get_identity(identity_id)
        if ident is None:
            raise KeyError(f"identity not found: {identity_id}")
        return ident

    def set_password_hash(self, identity_id: str, password_hash: str) -> None:
        self._conn.execute(
            "UPDATE identities SET password_hash = %s, updated_at = now() WHERE id = %s;",
            (password_hash, identity_id),
        )

    def link_account(self, identity_id: str, provider: str, subject: str) -> Identity:
        # One account per provider per identity: replace any earlier link.
        self._conn.execute(
            "DELETE FROM linked_accounts WHERE identity_id = %s AND provider = %s;",
            (identity_id, provider),
        )
        self._conn.execute(
            """
            INSERT INTO linked_accounts (provider, subject, identity_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (provider, subject) DO UPDATE SET identity_id = EXCLUDED.identity_id;
            """,
            (provider, subject, identity_id),
        )
        ident = self.get_identity(identity_id)
        if ident is None:
            raise KeyError(f"identity not found: {identity_id}")
        return ident

    def insert_session(self, session: Session) -> None:
        self._conn.execute(
            f"""
            INSERT INTO sessions ({_SESSION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s);
            """,
            (
                session.id,
                session.identity_id,
                session.created_at,
                session.expires_at,
                session.user_agent,
                session.ip_address,
            ),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self._conn.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s;", (session_id,)).fetchone()
        return _session_from_row(row) if row else None

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> Optional[Session]:
        row = self._conn.execute(
            f"UPDATE sessions SET expires_at = %s WHERE id = %s RETURNING {_SESSION_COLUMNS};",
            (expires_at, session_id),
        ).fetchone()
        return _session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM sessions WHERE id = %s;", (session_id,))
        return bool(cur.rowcount)

    def delete_identity_sessions(self, identity_id: str) -> int:
        cur = self._conn.execute("DELETE FROM sessions WHERE identity_id = %s;", (identity_id,))
        return int(cur.rowcount or 0)

    def issue_challenge(self, challenge: OtpChallenge) -> None:
        # Serialize issuance per (email, purpose) so two concurrent requests cannot both be "active".
        self._conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s));",
            (f"otp:{challenge.email}:{challenge.purpose}",),
        )
        self._conn.execute(
            """
            UPDATE otp_challenges
            SET invalidated_at = %s
            WHERE email = %s AND purpose = %s AND consumed_at IS NULL AND invalidated_at IS NULL;
            """,
            (challenge.issued_at, challenge.email, challenge.purpose),
        )
        self._conn.execute(
            f"""
            INSERT INTO otp_challenges ({_CHALLENGE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, NULL, NULL);
            """,
            (
                challenge.id,
                challenge.email,
                challenge.purpose,
                challenge.code_hash,
                challenge.issued_at,
                challenge.expires_at,
                challenge.attempts,
            ),
        )

    def get_active_challenge(self, email: str, purpose: str) -> Optional[OtpChallenge]:
        row = self._conn.execute(
            f"""
            SELECT {_CHALLENGE_COLUMNS}
            FROM otp_challenges
            WHERE email = %s AND purpose = %s AND consumed_at IS NULL AND invalidated_at IS NULL
            FOR UPDATE;
            """,
            (email, purpose),
        ).fetchone()
        return _challenge_from_row(row) if row else None

    def record_failed_attempt(self, challenge_id: str) -> int:
        row = self._conn.execute(
            "UPDATE otp_challenges SET attempts = attempts + 1 WHERE id = %s RETURNING attempts;",
            (challenge_id,),
        ).fetchone()
        return int(row[0]) if row else 0

    def consume_challenge(self, challenge_id: str, consumed_at: datetime) -> None:
        self._conn.execute(
            "UPDATE otp_challenges SET consumed_at = %s WHERE id = %s;",
            (consumed_at, challenge_id),
        )

    def purge_expired(self, now: datetime) -> Tuple[int, int]:
        s = self._conn.execute("DELETE FROM sessions WHERE expires_at < %s;", (now,))
        c = self._conn.execute(
            """
            DELETE FROM otp_challenges
            WHERE expires_at < %s OR consumed_at IS NOT NULL OR invalidated_at IS NOT NULL;
            """,
            (now,),
        )
        return int(s.rowcount or 0), int(c.rowcount or 0)


class PostgresCredentialStore:
    """
    CredentialStore backed by PostgreSQL.

    Each outermost `transaction()` opens one connection and one database transaction;
    nested calls in the same context join it.
    """

    def __init__(self, dsn: str, *, connect_timeout: int = 10) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._current: ContextVar[Optional[_PostgresTx]] = ContextVar(f"lyria_store_tx_{id(self)}", default=None)

    def _connect(self):
        # Lazy import so the service can run on the in-process store without DB deps.
        import psycopg  # type: ignore[import-not-found]

        try:
            return psycopg.connect(self._dsn, connect_timeout=self._connect_timeout)
        except psycopg.OperationalError as e:
            logger.warning("Postgres connection failed: %s", str(e))
            raise StoreUnavailable(f"Cannot connect to Postgres: {e}") from e

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1;")

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTx]:
        current = self._current.get()
        if current is not None:
            yield current
            return

        conn = self._connect()
        tx = _PostgresTx(conn)
        token = self._current.set(tx)
        pending: Optional[AuthError] = None
        try:
            # Connection context: commit on clean exit, rollback on exception, then close.
            with conn:
                try:
                    yield tx
                except AuthError as e:
                    pending = e
            if pending is not None:
                raise pending
        finally:
            self._current.reset(token)

