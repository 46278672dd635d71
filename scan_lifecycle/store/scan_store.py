"""Scan persistence on SQLAlchemy Core (Postgres, or SQLite for local dev).

Every write is a single conditional ``UPDATE ... WHERE status IN (...)``: a
row only changes if it is still in a state the write may be applied to. When
nothing matched, the row is read back in the same transaction to tell a
missing scan, an idempotent repeat and a rejected transition apart.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from scan_lifecycle.core import states
from scan_lifecycle.core.errors import (
    InvalidTransitionError,
    ScanNotFoundError,
    SchemaCacheError,
    StorageError,
)
from scan_lifecycle.core.schema_cache import is_schema_cache_error
from scan_lifecycle.store.schema import scans, scan_lifecycle_events
from scan_lifecycle.utils.timestamps import minutes_between, parse_timestamp, utcnow

logger = logging.getLogger("scan_lifecycle.store.scan_store")

TIMESTAMP_FIELDS = ("created_at", "started_at", "ended_at", "last_activity_at", "updated_at")


def _translate_error(exc: SQLAlchemyError):
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig) if orig is not None else str(exc)
    if is_schema_cache_error({"code": code, "message": message}):
        return SchemaCacheError(message, code=code)
    return StorageError(message, code=code)


def scan_from_row(row) -> Dict[str, Any]:
    """Normalise a scan row so both stores hand managers the same shape."""
    d = dict(row._mapping) if hasattr(row, "_mapping") else dict(row)
    for key in TIMESTAMP_FIELDS:
        if key in d:
            d[key] = parse_timestamp(d[key])
    return d


def classify_stuck(scan: Dict[str, Any], max_runtime_minutes: float, now: datetime) -> Dict[str, Any]:
    age = minutes_between(scan["created_at"], now)
    heartbeat_age = minutes_between(scan.get("last_activity_at") or scan["created_at"], now)
    return {
        "scan_id": scan["id"],
        "reason": "runtime_timeout" if age > max_runtime_minutes else "heartbeat_stale",
        "age_minutes": round(age, 2),
        "heartbeat_age_minutes": round(heartbeat_age, 2),
    }


class SqlScanStore:
    def __init__(self, engine):
        self.engine = engine

    @contextmanager
    def _begin(self):
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise _translate_error(exc) from exc

    @contextmanager
    def _connect(self):
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise _translate_error(exc) from exc

    # --- scans ---

    def insert_scan(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._begin() as conn:
            conn.execute(insert(scans).values(**values))
            row = conn.execute(select(scans).where(scans.c.id == values["id"])).first()
            return scan_from_row(row)

    def get_scan(self, scan_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(select(scans).where(scans.c.id == scan_id)).first()
            return scan_from_row(row) if row else None

    def update_scan(self, scan_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply *patch* if the scan's current status allows it.

        Returns ``{"applied": True}`` when the row changed and
        ``{"applied": False}`` when the patch repeats the status the scan
        already holds. Raises ScanNotFoundError / InvalidTransitionError.
        """
        target = patch.get("status")
        sources = states.allowed_sources(target)
        values = dict(patch)
        values.setdefault("updated_at", utcnow())

        with self._begin() as conn:
            result = conn.execute(
                update(scans)
                .where(scans.c.id == scan_id, scans.c.status.in_(sources))
                .values(**values)
            )
            if result.rowcount == 1:
                return {"applied": True}

            current = conn.execute(
                select(scans.c.status).where(scans.c.id == scan_id)
            ).scalar_one_or_none()

        if current is None:
            raise ScanNotFoundError(f"Scan {scan_id} not found")
        if target is not None and current == target:
            logger.debug("Scan %s already %s, nothing to do", scan_id, target)
            return {"applied": False}
        if target:
            message = f"Cannot move scan {scan_id} from {current} to {target}"
        else:
            message = f"Cannot update scan {scan_id}: it is already {current}"
        raise InvalidTransitionError(message, current_status=current)

    def update_heartbeat(self, scan_id: str, progress_message: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        patch = {"last_activity_at": now or utcnow()}
        if progress_message is not None:
            patch["progress_message"] = progress_message
        return self.update_scan(scan_id, patch)

    def transition_to_terminal(
        self,
        scan_id: str,
        status: str,
        end_time: Optional[datetime] = None,
        error_message: Optional[str] = None,
        progress_message: Optional[str] = None,
        results: Any = None,
    ) -> Dict[str, Any]:
        if not states.is_terminal(status):
            raise ValueError(f"{status!r} is not a terminal status")
        end_time = end_time or utcnow()
        patch = {"status": status, "ended_at": end_time, "last_activity_at": end_time}
        if status == states.FAILED:
            patch["error_message"] = error_message
        elif results is not None:
            patch["results"] = results
        if progress_message is not None:
            patch["progress_message"] = progress_message
        return self.update_scan(scan_id, patch)

    def find_stuck_scans(
        self,
        max_runtime_minutes: float,
        heartbeat_stale_minutes: float,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Active scans past either threshold, selected in one query."""
        now = now or utcnow()
        runtime_cutoff = now - timedelta(minutes=max_runtime_minutes)
        heartbeat_cutoff = now - timedelta(minutes=heartbeat_stale_minutes)

        with self._connect() as conn:
            rows = conn.execute(
                select(scans.c.id, scans.c.created_at, scans.c.last_activity_at)
                .where(
                    scans.c.status.in_(states.ACTIVE_STATUSES),
                    or_(
                        scans.c.created_at < runtime_cutoff,
                        scans.c.last_activity_at < heartbeat_cutoff,
                    ),
                )
                .order_by(scans.c.created_at.asc())
            ).fetchall()

        return [classify_stuck(scan_from_row(r), max_runtime_minutes, now) for r in rows]

    def list_scans_since(self, since: datetime) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                select(
                    scans.c.id,
                    scans.c.status,
                    scans.c.created_at,
                    scans.c.ended_at,
                    scans.c.last_activity_at,
                ).where(scans.c.created_at >= since)
            ).fetchall()
            return [scan_from_row(r) for r in rows]

    # --- lifecycle events ---

    def record_event(self, scan_id: Optional[str], event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        with self._begin() as conn:
            conn.execute(
                insert(scan_lifecycle_events).values(
                    scan_id=scan_id,
                    event_type=event_type,
                    event_data=json.loads(json.dumps(data or {}, default=str)),
                    created_at=utcnow(),
                )
            )

    def list_events(self, scan_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(scan_lifecycle_events).order_by(scan_lifecycle_events.c.id.asc())
        if scan_id is not None:
            query = query.where(scan_lifecycle_events.c.scan_id == scan_id)
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        events = []
        for r in rows:
            d = dict(r._mapping)
            d["created_at"] = parse_timestamp(d["created_at"])
            events.append(d)
        return events
