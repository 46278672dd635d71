"""Scan persistence through the Supabase/PostgREST gateway.

Row reads and writes go through ``/rest/v1/scans``; the heartbeat, terminal
transition and stuck-scan selection go through the RPC functions defined in
``migrations/001_scans.postgres.sql`` so each is one atomic statement on the
database side.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from scan_lifecycle.core import states
from scan_lifecycle.core.errors import (
    InvalidTransitionError,
    ScanNotFoundError,
    SchemaCacheError,
    StorageError,
)
from scan_lifecycle.core.schema_cache import is_schema_cache_error
from scan_lifecycle.store.scan_store import scan_from_row
from scan_lifecycle.utils.timestamps import utcnow

logger = logging.getLogger("scan_lifecycle.store.postgrest_store")


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class PostgrestScanStore:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.rest_url = base_url.rstrip("/") + "/rest/v1"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            }
        )

    def _request(self, method: str, path: str, params=None, payload=None, prefer: Optional[str] = None):
        headers = {"Prefer": prefer} if prefer else None
        data = json.dumps(payload, default=_json_default) if payload is not None else None
        try:
            response = self.session.request(
                method,
                f"{self.rest_url}/{path}",
                params=params,
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(f"{method} {path} failed: {exc}", code="network") from exc

        if response.status_code >= 400:
            raise self._error_from_response(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise StorageError(f"{method} {path} returned invalid JSON") from exc

    def _error_from_response(self, response):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("code") or str(response.status_code)
        message = body.get("message") or f"HTTP {response.status_code}"
        if is_schema_cache_error(body):
            return SchemaCacheError(message, code=code, details=body.get("details"))
        return StorageError(message, code=code, details=body.get("details"))

    def _rpc(self, name: str, args: Dict[str, Any]):
        return self._request("POST", f"rpc/{name}", payload=args)

    def _resolve_noop(self, scan_id: str, target: Optional[str]) -> Dict[str, Any]:
        scan = self.get_scan(scan_id)
        if scan is None:
            raise ScanNotFoundError(f"Scan {scan_id} not found")
        current = scan["status"]
        if target is not None and current == target:
            return {"applied": False}
        if target:
            message = f"Cannot move scan {scan_id} from {current} to {target}"
        else:
            message = f"Cannot update scan {scan_id}: it is already {current}"
        raise InvalidTransitionError(message, current_status=current)

    # --- scans ---

    def insert_scan(self, values: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._request("POST", "scans", payload=values, prefer="return=representation")
        if not rows:
            raise StorageError("Insert returned no row")
        return scan_from_row(rows[0])

    def get_scan(self, scan_id: str) -> Optional[Dict[str, Any]]:
        rows = self._request("GET", "scans", params={"id": f"eq.{scan_id}", "select": "*"})
        return scan_from_row(rows[0]) if rows else None

    def update_scan(self, scan_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        target = patch.get("status")
        sources = states.allowed_sources(target)
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        rows = self._request(
            "PATCH",
            "scans",
            params={"id": f"eq.{scan_id}", "status": f"in.({','.join(sources)})"},
            payload=values,
            prefer="return=representation",
        )
        if rows:
            return {"applied": True}
        return self._resolve_noop(scan_id, target)

    def update_heartbeat(self, scan_id: str, progress_message: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        # the RPC stamps last_activity_at with the database clock
        updated = self._rpc(
            "update_scan_heartbeat",
            {"scan_id": scan_id, "progress_msg": progress_message},
        )
        if updated:
            return {"applied": True}
        return self._resolve_noop(scan_id, None)

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
        updated = self._rpc(
            "transition_scan_to_terminal",
            {
                "scan_id": scan_id,
                "new_status": status,
                "end_time": (end_time or utcnow()).isoformat(),
                "error_msg": error_message,
                "final_progress_msg": progress_message,
                "final_results": results,
            },
        )
        if updated:
            return {"applied": True}
        return self._resolve_noop(scan_id, status)

    def find_stuck_scans(
        self,
        max_runtime_minutes: float,
        heartbeat_stale_minutes: float,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        rows = self._rpc(
            "find_stuck_scans",
            {
                "max_age_minutes": float(max_runtime_minutes),
                "heartbeat_stale_minutes": float(heartbeat_stale_minutes),
            },
        ) or []
        return [
            {
                "scan_id": row["scan_id"],
                "reason": row["reason"],
                "age_minutes": float(row["age_minutes"]),
                "heartbeat_age_minutes": float(row["heartbeat_age_minutes"]),
            }
            for row in rows
        ]

    def list_scans_since(self, since: datetime) -> List[Dict[str, Any]]:
        rows = self._request(
            "GET",
            "scans",
            params={
                "select": "id,status,created_at,ended_at,last_activity_at",
                "created_at": f"gte.{since.isoformat()}",
            },
        ) or []
        return [scan_from_row(r) for r in rows]

    # --- lifecycle events ---

    def record_event(self, scan_id: Optional[str], event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._request(
            "POST",
            "scan_lifecycle_events",
            payload={"scan_id": scan_id, "event_type": event_type, "event_data": data or {}},
            prefer="return=minimal",
        )
