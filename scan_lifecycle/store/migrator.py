"""Lightweight migration runner.

Applies .sql files from the migrations/ directory in filename order and
records each applied migration in a _migrations table.  Safe to call on
every startup (idempotent).

File-naming convention for dialect-specific migrations:
    NNN_name.sqlite.sql    – applied only when the engine dialect is SQLite
    NNN_name.postgres.sql  – applied only when the dialect is PostgreSQL
    NNN_name.sql           – applied for every dialect (generic)

The migration name recorded in _migrations strips the dialect suffix so that
``001_scans.sqlite.sql`` and ``001_scans.postgres.sql`` share the logical
name ``001_scans`` and are never both applied.
"""

import os
import logging

from sqlalchemy import text

logger = logging.getLogger("scan_lifecycle.store.migrator")

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "migrations")

_DIALECT_SUFFIXES = {
    "sqlite": ".sqlite.sql",
    "postgresql": ".postgres.sql",
}


def _logical_name(filename: str) -> str:
    """``001_scans.postgres.sql`` -> ``001_scans``"""
    for suffix in _DIALECT_SUFFIXES.values():
        if filename.endswith(suffix):
            return filename[: -len(suffix)]
    return filename.removesuffix(".sql")


def _select_files_for_dialect(dialect_name: str, migrations_dir: str) -> list[str]:
    all_files = [f for f in os.listdir(migrations_dir) if f.endswith(".sql")]
    my_suffix = _DIALECT_SUFFIXES.get(dialect_name)

    selected: list[str] = []
    for f in all_files:
        is_dialect_specific = any(f.endswith(s) for s in _DIALECT_SUFFIXES.values())
        if is_dialect_specific:
            if my_suffix and f.endswith(my_suffix):
                selected.append(f)
        else:
            selected.append(f)

    return sorted(selected)


def split_statements(sql: str) -> list[str]:
    """Split a script on ``;`` line endings, keeping ``$$`` function bodies whole."""
    statements = []
    current: list[str] = []
    in_dollar_block = False

    for line in sql.splitlines():
        stripped = line.strip()
        if not in_dollar_block and (not stripped or stripped.startswith("--")):
            continue
        current.append(line)
        if stripped.count("$$") % 2 == 1:
            in_dollar_block = not in_dollar_block
        if not in_dollar_block and stripped.endswith(";"):
            statement = "\n".join(current).strip().rstrip(";").strip()
            if statement:
                statements.append(statement)
            current = []

    tail = "\n".join(current).strip().rstrip(";").strip()
    if tail:
        statements.append(tail)
    return statements


def _ensure_migrations_table(conn):
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                name VARCHAR(255) PRIMARY KEY,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _applied_migrations(conn) -> set:
    rows = conn.execute(text("SELECT name FROM _migrations")).fetchall()
    return {row[0] for row in rows}


def run_migrations(engine, migrations_dir: str = MIGRATIONS_DIR) -> list[str]:
    """Apply any pending .sql migration files; return the logical names applied."""
    dialect_name = engine.dialect.name
    sql_files = _select_files_for_dialect(dialect_name, migrations_dir)

    if not sql_files:
        logger.info("No migration files found in %s for dialect %s", migrations_dir, dialect_name)
        return []

    with engine.begin() as conn:
        _ensure_migrations_table(conn)

    applied_now = []
    with engine.begin() as conn:
        applied = _applied_migrations(conn)

        for filename in sql_files:
            logical = _logical_name(filename)
            if logical in applied:
                continue

            logger.info("Applying migration: %s (dialect=%s)", filename, dialect_name)
            with open(os.path.join(migrations_dir, filename), "r") as f:
                sql = f.read()

            # exec_driver_sql: function bodies contain text SQLAlchemy would treat as binds
            for statement in split_statements(sql):
                conn.exec_driver_sql(statement)

            conn.execute(
                text("INSERT INTO _migrations (name) VALUES (:name)"),
                {"name": logical},
            )
            applied_now.append(logical)
            logger.info("Applied migration: %s", logical)

    return applied_now
