"""SQLAlchemy Core table definitions.

Used by the SQL store for query building. The DDL (and, on Postgres, the RPC
functions the PostgREST store calls) lives in the .sql migration files.
"""

from sqlalchemy import (
    Table,
    Column,
    String,
    Text,
    Integer,
    DateTime,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB

from scan_lifecycle.store.db import metadata

JSONType = JSON().with_variant(JSONB(), "postgresql")

scans = Table(
    "scans",
    metadata,
    Column("id", String(36), primary_key=True),  # UUID
    Column("site_id", String(64), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("progress_message", Text, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("results", JSONType, nullable=True),
    Column("max_runtime_minutes", Integer, nullable=False),
    Column("heartbeat_interval_seconds", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("ended_at", DateTime(timezone=True), nullable=True),
    Column("last_activity_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

scan_lifecycle_events = Table(
    "scan_lifecycle_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scan_id", String(36), nullable=True),  # null for system-level events
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSONType, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
