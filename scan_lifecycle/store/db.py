"""Database engine initialisation.

Postgres in production, a SQLite file as the local-dev fallback. The engine is
created once by the process bootstrap and handed to the store.
"""

import os
import logging

from sqlalchemy import create_engine, MetaData, event

logger = logging.getLogger("scan_lifecycle.store")

metadata = MetaData()


def _default_url() -> str:
    """Return a SQLite file URL as the local-dev fallback."""
    db_dir = os.path.join(os.getcwd(), "data")
    os.makedirs(db_dir, exist_ok=True)
    return f"sqlite:///{os.path.join(db_dir, 'scan_lifecycle.db')}"


def _normalise_url(url: str) -> str:
    # Hosted Postgres URLs sometimes use postgres:// instead of postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_db_engine(url: str | None = None):
    """Build a SQLAlchemy engine for *url* (or the SQLite fallback)."""
    url = _normalise_url(url or _default_url())

    logger.info("Connecting to database: %s", url.split("@")[-1] if "@" in url else url)

    if url.startswith("sqlite"):

        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        engine = create_engine(
            url, echo=False, future=True, connect_args={"check_same_thread": False}
        )
        event.listen(engine, "connect", _set_sqlite_pragma)
        return engine

    return create_engine(url, echo=False, future=True, pool_size=5, max_overflow=10)
