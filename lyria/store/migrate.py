"""
Schema migrations for the PostgreSQL credential store.

Migrations are the `NNNN_name.sql` files shipped in `lyria/store/migrations`. Each one is
applied once, in its own transaction, and recorded in `schema_migrations` with the SHA-256
of its contents. Editing a file that was already applied is refused. A session-level
advisory lock serializes replicas that start at the same time.
"""

from __future__ import annotations

import argparse
import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from lyria.store.config import StoreConfig, build_postgres_dsn, load_store_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# bigint key shared by every process that migrates this schema
LOCK_KEY = 4_210_772_655_031

_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version text PRIMARY KEY,
  checksum text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
);
"""


class MigrationError(RuntimeError):
    """The database and the bundled migrations disagree."""


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str
    sql: str

    @classmethod
    def from_file(cls, path: Path) -> "Migration":
        raw = path.read_bytes()
        return cls(
            version=path.name.split(".", 1)[0],
            path=path,
            checksum=hashlib.sha256(raw).hexdigest(),
            sql=raw.decode("utf-8"),
        )


@dataclass(frozen=True)
class MigrationPlan:
    """Applied versions recorded in the database and the bundled migrations still to run."""

    applied: Tuple[str, ...]
    pending: Tuple[Migration, ...]

    @property
    def pending_versions(self) -> List[str]:
        return [m.version for m in self.pending]


def load_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """Bundled migrations in version order."""
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        return []
    return [Migration.from_file(p) for p in sorted(directory.glob("*.sql")) if p.is_file()]


def _connect(dsn: str):
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


@contextmanager
def _locked_connection(dsn: str) -> Iterator[object]:
    with _connect(dsn) as conn:
        # Each migration opens its own transaction; the lock spans all of them.
        conn.autocommit = True
        conn.execute("SELECT pg_advisory_lock(%s);", (LOCK_KEY,))
        try:
            yield conn
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s);", (LOCK_KEY,))


def _recorded(conn) -> Dict[str, str]:  # type: ignore[no-untyped-def]
    conn.execute(_LEDGER_DDL)
    rows = conn.execute("SELECT version, checksum FROM schema_migrations ORDER BY version;").fetchall()
    return {str(version): str(checksum) for version, checksum in rows}


def _plan(conn, migrations: Sequence[Migration]) -> MigrationPlan:  # type: ignore[no-untyped-def]
    recorded = _recorded(conn)
    pending: List[Migration] = []
    for m in migrations:
        checksum = recorded.get(m.version)
        if checksum is None:
            pending.append(m)
        elif checksum != m.checksum:
            raise MigrationError(
                f"Migration checksum mismatch for {m.version}: db={checksum[:12]} file={m.checksum[:12]}"
            )
    return MigrationPlan(applied=tuple(sorted(recorded)), pending=tuple(pending))


def plan_migrations(*, dsn: str, migrations: Optional[Iterable[Migration]] = None) -> MigrationPlan:
    """Compare the database with the bundled migrations without changing anything."""
    migs = list(migrations) if migrations is not None else load_migrations()
    with _locked_connection(dsn) as conn:
        return _plan(conn, migs)


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
) -> Tuple[int, List[str]]:
    """
    Apply pending migrations.

    Returns:
        (applied_count, applied_versions)

    Raises:
        MigrationError: An applied migration was edited after the fact
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    applied: List[str] = []
    with _locked_connection(dsn) as conn:
        for m in _plan(conn, migs).pending:
            with conn.transaction():
                conn.execute(m.sql)
                conn.execute(
                    "INSERT INTO schema_migrations(version, checksum) VALUES (%s, %s);",
                    (m.version, m.checksum),
                )
            logger.info("Applied migration %s", m.version)
            applied.append(m.version)
    return len(applied), applied


def maybe_auto_migrate(cfg: Optional[StoreConfig] = None) -> Tuple[bool, str]:
    """
    Migrate at startup when DB_AUTO_MIGRATE=1 and PostgreSQL is the configured backend.

    Returns: (did_attempt, message)
    """
    cfg = cfg or load_store_config()
    if cfg.backend != "postgres":
        return False, f"Store backend is {cfg.backend}"
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    n, versions = apply_migrations(dsn=dsn)
    if n:
        return True, f"Applied {n} migration(s): {', '.join(versions)}"
    return True, "No pending migrations"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="lyria-migrate", description="Apply pending credential store migrations")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--list", action="store_true", help="List bundled migrations and exit")
    mode.add_argument("--status", action="store_true", help="Show applied and pending migrations and exit")
    args = parser.parse_args(argv)

    if args.list:
        for m in load_migrations():
            print(f"{m.version}  {m.checksum[:12]}  {m.path.name}")
        return 0

    dsn = build_postgres_dsn(load_store_config())
    if not dsn:
        print("Postgres not configured (set DATABASE_URL or POSTGRES_* env vars).")
        return 2

    try:
        if args.status:
            plan = plan_migrations(dsn=dsn)
            print(f"Applied: {', '.join(plan.applied) or 'none'}")
            print(f"Pending: {', '.join(plan.pending_versions) or 'none'}")
            return 0
        n, versions = apply_migrations(dsn=dsn)
    except MigrationError as e:
        print(str(e))
        return 1

    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
