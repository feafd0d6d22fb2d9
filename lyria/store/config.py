from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from lyria.auth.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class StoreConfig:
    backend: str  # postgres|memory
    db_auto_migrate: bool

    # Postgres connection (either dsn or parts)
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]


def load_store_config() -> StoreConfig:
    backend = (os.getenv("AUTH_STORE_BACKEND") or "").strip().lower() or "postgres"
    dsn = (os.getenv("DATABASE_URL") or os.getenv("POSTGRES_DSN") or "").strip() or None
    host = (os.getenv("POSTGRES_HOST") or "").strip() or None
    port_raw = (os.getenv("POSTGRES_PORT") or "").strip() or "5432"
    try:
        port = int(port_raw)
    except ValueError:
        port = 5432
    db = (os.getenv("POSTGRES_DB") or "").strip() or None
    user = (os.getenv("POSTGRES_USER") or "").strip() or None
    pw = (os.getenv("POSTGRES_PASSWORD") or "").strip() or None

    return StoreConfig(
        backend=backend,
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        postgres_dsn=dsn,
        postgres_host=host,
        postgres_port=port,
        postgres_db=db,
        postgres_user=user,
        postgres_password=pw,
    )


def build_postgres_dsn(cfg: StoreConfig) -> Optional[str]:
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # psycopg's conninfo builder quotes/escapes special characters in passwords and other fields.
    from psycopg.conninfo import make_conninfo  # type: ignore[import-not-found]

    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )


def build_store(cfg: StoreConfig):
    """
    Build the process-wide credential store handle.

    Args:
        cfg: Store configuration

    Raises:
        StoreUnavailable: If the configured backend cannot be built
    """
    if cfg.backend == "memory":
        from lyria.store.memory import InMemoryCredentialStore

        logger.warning("Using in-process credential store: data is lost on restart (development only)")
        return InMemoryCredentialStore()
    if cfg.backend != "postgres":
        raise StoreUnavailable(f"Unknown AUTH_STORE_BACKEND: {cfg.backend!r}")

    dsn = build_postgres_dsn(cfg)
    if not dsn:
        raise StoreUnavailable("Postgres not configured (set DATABASE_URL or POSTGRES_* env vars)")

    from lyria.store.postgres import PostgresCredentialStore

    return PostgresCredentialStore(dsn)
