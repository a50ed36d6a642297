from __future__ import annotations

import os
import subprocess
from pathlib import Path

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from feedaudit.config import database_url
from feedaudit.models import Base


def _is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_kwargs(url: str) -> dict:
    if _is_sqlite_url(url):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {"pool_pre_ping": True}


DATABASE_URL = database_url()
ENGINE = create_engine(DATABASE_URL, future=True, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)


REQUIRED_SCHEMA: dict[str, set[str]] = {
    "rule": {"id", "name", "description", "category", "condition", "criticality", "created_at"},
    "audit": {
        "id",
        "name",
        "file_hash",
        "status",
        "total_products",
        "total_rules",
        "rules_processed",
        "progress",
        "compliant_products",
        "warning_products",
        "critical_products",
        "parse_failures",
        "failure_reason",
        "source_content",
        "column_mapping",
        "rule_ids",
        "reprocessed_from_id",
        "created_at",
        "updated_at",
        "completed_at",
    },
    "audit_result": {
        "id",
        "audit_id",
        "rule_id",
        "rule_name",
        "field_name",
        "product_id",
        "status",
        "details",
    },
}


BUNDLED_MIGRATIONS = Path(__file__).resolve().parents[1] / "docs" / "db" / "migrations"


def _migrations_dir() -> Path:
    override = os.getenv("FEEDAUDIT_DB_MIGRATIONS_DIR")
    return Path(override).expanduser().resolve() if override else BUNDLED_MIGRATIONS


def _migration_sql_files() -> list[Path]:
    override = os.getenv("FEEDAUDIT_DB_MIGRATION_SQL")
    if override:
        candidates = [Path(override).expanduser().resolve()]
        if not candidates[0].is_file():
            raise RuntimeError(f"Migration SQL file not found: {candidates[0]}")
        return candidates

    source = _migrations_dir()
    candidates = sorted(path.resolve() for path in source.glob("*.sql")) if source.is_dir() else []
    if not candidates:
        raise RuntimeError(f"No feedaudit SQL migrations under {source}")
    return candidates


def _postgres_conninfo_for_psql(url: str) -> str:
    parsed = make_url(url)
    if parsed.get_backend_name() != "postgresql":
        raise RuntimeError(f"psql migrations need a PostgreSQL URL, got backend {parsed.get_backend_name()!r}")
    return parsed.set(drivername="postgresql").render_as_string(hide_password=False)


MIGRATIONS_TABLE = "schema_migrations"


def _psql_command(conninfo: str, *args: str) -> list[str]:
    return ["psql", conninfo, "-v", "ON_ERROR_STOP=1", *args]


def _run_psql(command: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(command, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise RuntimeError("psql must be on PATH to migrate a PostgreSQL feedaudit database") from exc
    except subprocess.CalledProcessError as exc:
        raise RuntimeError(f"Postgres migration failed: {(exc.stderr or '').strip()}") from exc


def _ensure_schema_migrations_table(conninfo: str) -> None:
    ddl = (
        f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} "
        "(version TEXT PRIMARY KEY, applied_at TIMESTAMPTZ NOT NULL DEFAULT now())"
    )
    _run_psql(_psql_command(conninfo, "-c", ddl))


def _applied_migration_versions(conninfo: str) -> set[str]:
    query = f"SELECT version FROM {MIGRATIONS_TABLE} ORDER BY version"
    output = _run_psql(_psql_command(conninfo, "-t", "-A", "-c", query)).stdout or ""
    return {version for version in (line.strip() for line in output.splitlines()) if version}


def _record_migration_version(conninfo: str, version: str) -> None:
    literal = version.replace("'", "''")
    statement = f"INSERT INTO {MIGRATIONS_TABLE} (version) VALUES ('{literal}') ON CONFLICT (version) DO NOTHING"
    _run_psql(_psql_command(conninfo, "-c", statement))


def _database_looks_initialized(engine: Engine) -> bool:
    return "rule" in inspect(engine).get_table_names()


def _run_postgres_migrations(engine: Engine) -> None:
    migration_files = _migration_sql_files()
    conninfo = _postgres_conninfo_for_psql(DATABASE_URL)
    _ensure_schema_migrations_table(conninfo)
    applied = _applied_migration_versions(conninfo)

    # A schema built by create_all before tracking started counts as the first migration.
    if not applied and _database_looks_initialized(engine):
        _record_migration_version(conninfo, migration_files[0].name)
        applied.add(migration_files[0].name)

    pending = [path for path in migration_files if path.name not in applied]
    for migration_file in pending:
        _run_psql(_psql_command(conninfo, "-1", "-f", str(migration_file)))
        _record_migration_version(conninfo, migration_file.name)


def verify_schema(engine: Engine, required: dict[str, set[str]] | None = None) -> None:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    missing: list[str] = []
    for table, columns in (required or REQUIRED_SCHEMA).items():
        present = {column["name"] for column in inspector.get_columns(table)} if table in tables else set()
        missing.extend(f"{table}.{column}" for column in sorted(columns - present))
    if missing:
        raise RuntimeError(f"Schema verification failed; missing columns: {', '.join(missing)}")


def init_db() -> None:
    if _is_sqlite_url(DATABASE_URL):
        Base.metadata.create_all(bind=ENGINE)
    else:
        _run_postgres_migrations(ENGINE)
    verify_schema(ENGINE)


def reset_db() -> None:
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
