from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

import pytest

from lyria.store import migrate
from lyria.store.config import load_store_config


class _Result:
    def __init__(self, rows=None) -> None:  # type: ignore[no-untyped-def]
        self._rows = rows or []

    def fetchall(self):  # type: ignore[no-untyped-def]
        return self._rows


class _Conn:
    def __init__(self, applied=None) -> None:  # type: ignore[no-untyped-def]
        self.applied = dict(applied or {})
        self.sql = []
        self.autocommit = False
        self.transactions = 0

    def execute(self, sql, params=None):  # type: ignore[no-untyped-def]
        self.sql.append(sql)
        if sql.startswith("SELECT version, checksum FROM schema_migrations"):
            return _Result(list(self.applied.items()))
        if sql.startswith("INSERT INTO schema_migrations"):
            self.applied[params[0]] = params[1]
        return _Result()

    @contextmanager
    def transaction(self):  # type: ignore[no-untyped-def]
        self.transactions += 1
        yield

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False


def test_bundled_migrations_are_ordered() -> None:
    migs = migrate.load_migrations()
    assert migs, "expected at least one migration"
    assert [m.version for m in migs] == sorted(m.version for m in migs)
    core = migs[0]
    assert core.version == "0001_auth_core"
    for table in ("identities", "linked_accounts", "sessions", "otp_challenges"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in core.sql


def test_apply_pending_migrations(monkeypatch) -> None:
    conn = _Conn()
    monkeypatch.setattr(migrate, "_connect", lambda _dsn: conn)

    n, versions = migrate.apply_migrations(dsn="dsn")
    assert n == len(migrate.load_migrations())
    assert versions[0] == "0001_auth_core"
    assert conn.autocommit is True
    assert conn.transactions == n
    assert any("pg_advisory_lock" in s for s in conn.sql)
    assert any("pg_advisory_unlock" in s for s in conn.sql)

    # Second run is a no-op.
    n, versions = migrate.apply_migrations(dsn="dsn")
    assert (n, versions) == (0, [])


def test_checksum_mismatch_is_refused(monkeypatch) -> None:
    conn = _Conn(applied={"0001_auth_core": "0" * 64})
    monkeypatch.setattr(migrate, "_connect", lambda _dsn: conn)
    with pytest.raises(migrate.MigrationError, match="checksum mismatch"):
        migrate.apply_migrations(dsn="dsn")
    # The lock is released even on failure.
    assert "pg_advisory_unlock" in conn.sql[-1]


def test_custom_migrations_dir(monkeypatch, tmp_path: Path) -> None:
    (tmp_path / "0002_b.sql").write_text("SELECT 2;")
    (tmp_path / "0001_a.sql").write_text("SELECT 1;")
    (tmp_path / "notes.txt").write_text("ignored")
    monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
    assert [m.version for m in migrate.load_migrations()] == ["0001_a", "0002_b"]


def test_maybe_auto_migrate_skips_when_not_configured(monkeypatch) -> None:
    did, msg = migrate.maybe_auto_migrate(load_store_config())
    assert did is False
    assert "memory" in msg

    monkeypatch.setenv("AUTH_STORE_BACKEND", "postgres")
    monkeypatch.setenv("DATABASE_URL", "postgresql://example")
    did, msg = migrate.maybe_auto_migrate(load_store_config())
    assert did is False
    assert "DB_AUTO_MIGRATE" in msg


def test_maybe_auto_migrate_applies(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_STORE_BACKEND", "postgres")
    monkeypatch.setenv("DATABASE_URL", "postgresql://example")
    monkeypatch.setenv("DB_AUTO_MIGRATE", "1")
    conn = _Conn()
    monkeypatch.setattr(migrate, "_connect", lambda _dsn: conn)
    did, msg = migrate.maybe_auto_migrate()
    assert did is True
    assert msg.startswith("Applied")


def test_plan_reports_applied_and_pending(monkeypatch) -> None:
    conn = _Conn(applied={"0001_auth_core": migrate.load_migrations()[0].checksum})
    monkeypatch.setattr(migrate, "_connect", lambda _dsn: conn)
    extra = migrate.Migration(version="0002_extra", path=Path("0002_extra.sql"), checksum="c", sql="SELECT 1;")

    plan = migrate.plan_migrations(dsn="dsn", migrations=migrate.load_migrations()[:1] + [extra])
    assert plan.applied == ("0001_auth_core",)
    assert plan.pending_versions == ["0002_extra"]
    # Planning never applies anything.
    assert conn.transactions == 0
    assert "0002_extra" not in conn.applied


def test_cli_list(capsys) -> None:
    assert migrate.main(["--list"]) == 0
    assert "0001_auth_core" in capsys.readouterr().out


def test_cli_without_database(capsys) -> None:
    assert migrate.main([]) == 2
    assert "DATABASE_URL" in capsys.readouterr().out


def test_cli_status_and_mismatch(monkeypatch, capsys) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://example")
    conn = _Conn()
    monkeypatch.setattr(migrate, "_connect", lambda _dsn: conn)
    assert migrate.main(["--status"]) == 0
    out = capsys.readouterr().out
    assert "Applied: none" in out
    assert "0001_auth_core" in out

    conn.applied["0001_auth_core"] = "0" * 64
    assert migrate.main([]) == 1
    assert "checksum mismatch" in capsys.readouterr().out
