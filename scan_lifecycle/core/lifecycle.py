"""Scan lifecycle manager.

Owns the scan state machine (pending -> running -> completed/failed) for the
external scan workers: creation, heartbeats and terminal transitions. Writes
that fail on a stale PostgREST schema cache trigger a cache refresh and a
bounded retry; every other error is reported straight back.

Public methods return result dicts (``success`` plus ``error``/``error_code``
on failure) instead of raising. Only malformed input raises, and it does so
before any I/O.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from scan_lifecycle.core import states
from scan_lifecycle.core.errors import NOT_FOUND, ScanLifecycleError
from scan_lifecycle.core.retry import RetryOutcome, RetryPolicy
from scan_lifecycle.core.schema_cache import SchemaCacheRefresher, classify_database_error
from scan_lifecycle.utils.analytics import ScanAnalytics
from scan_lifecycle.utils.timestamps import utcnow

logger = logging.getLogger("scan_lifecycle.lifecycle")

DEFAULT_MAX_RUNTIME_MINUTES = 15
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30

IMMUTABLE_FIELDS = ("id", "site_id", "user_id", "created_at")


@dataclass(frozen=True)
class LifecycleOptions:
    max_retries: int = 3
    base_delay_ms: float = 1000
    enable_recovery: bool = True
    enable_analytics: bool = True

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "LifecycleOptions":
        return cls(
            max_retries=int(section.get("max_retries", cls.max_retries)),
            base_delay_ms=float(section.get("base_delay_ms", cls.base_delay_ms)),
            enable_recovery=bool(section.get("enable_recovery", cls.enable_recovery)),
            enable_analytics=bool(section.get("enable_analytics", cls.enable_analytics)),
        )

    def retry_policy(self, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
        # With recovery disabled every error is final.
        return RetryPolicy(
            max_retries=self.max_retries if self.enable_recovery else 0,
            base_delay_ms=self.base_delay_ms,
            sleep=sleep,
        )


def _require_id(value: Any, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")


def _require_positive(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")


def _check_terminal_fields(target: Optional[str], values: Dict[str, Any]) -> None:
    """ended_at, error_message and results only travel with the status they belong to."""
    if values.get("ended_at") is not None and not states.is_terminal(target):
        raise ValueError("ended_at can only be set by a terminal transition")
    if values.get("error_message") is not None and target != states.FAILED:
        raise ValueError("error_message can only be set when failing a scan")
    if values.get("results") is not None and target != states.COMPLETED:
        raise ValueError("results can only be set when completing a scan")
    if target == states.FAILED and not values.get("error_message"):
        raise ValueError("A failed scan requires an error_message")


def _failure(outcome: RetryOutcome) -> Dict[str, Any]:
    result = outcome.error.to_result()
    result["attempts"] = outcome.attempts
    result["recovery_attempts"] = outcome.recovery_attempts
    return result


def _write_result(outcome: RetryOutcome) -> Dict[str, Any]:
    if not outcome.succeeded:
        return _failure(outcome)
    return {
        "success": True,
        "no_op": not (outcome.value or {}).get("applied", True),
        "attempts": outcome.attempts,
        "recovery_attempts": outcome.recovery_attempts,
    }


class ScanLifecycleManager:
    def __init__(
        self,
        store,
        options: Optional[LifecycleOptions] = None,
        schema_refresher: Optional[Callable[[], Dict[str, Any]]] = None,
        scan_defaults: Optional[Dict[str, int]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.options = options or LifecycleOptions()
        self.schema_refresher = schema_refresher or SchemaCacheRefresher(None)
        self.retry_policy = self.options.retry_policy(sleep)
        self.analytics = ScanAnalytics(enabled=self.options.enable_analytics)
        scan_defaults = scan_defaults or {}
        self.default_max_runtime_minutes = int(
            scan_defaults.get("max_runtime_minutes", DEFAULT_MAX_RUNTIME_MINUTES)
        )
        self.default_heartbeat_interval_seconds = int(
            scan_defaults.get("heartbeat_interval_seconds", DEFAULT_HEARTBEAT_INTERVAL_SECONDS)
        )

    # --- internals ---

    def _log_event(self, scan_id: Optional[str], event_type: str, data: Dict[str, Any]) -> None:
        """Best effort: a failed event write never fails the operation."""
        try:
            self.store.record_event(scan_id, event_type, data)
        except ScanLifecycleError as e:
            logger.warning(f"Failed to log lifecycle event {event_type} for scan {scan_id}: {e.message}")

    def _recover(self, scan_id: str) -> Callable[[], Dict[str, Any]]:
        def recover() -> Dict[str, Any]:
            logger.info(f"Attempting schema cache recovery for scan {scan_id}")
            started = time.monotonic()
            result = self.schema_refresher()
            event_type = "schema_recovery_succeeded" if result.get("success") else "schema_recovery_failed"
            self._log_event(
                scan_id,
                event_type,
                {
                    "method": result.get("method"),
                    "error": result.get("error"),
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            if not result.get("success"):
                logger.error(f"Schema cache recovery failed for scan {scan_id}: {result.get('error')}")
            return result

        return recover

    def _run(self, label: str, scan_id: str, operation: Callable[[], Any]) -> RetryOutcome:
        outcome = self.retry_policy.run(operation, recover=self._recover(scan_id), label=label)
        if not outcome.succeeded:
            logger.warning(
                f"{label} failed for scan {scan_id} after {outcome.attempts} attempt(s): "
                f"{outcome.error.message} ({classify_database_error(outcome.error)['type']})"
            )
        return outcome

    # --- public API ---

    def create_scan(
        self,
        site_id: str,
        user_id: str,
        status: str = states.PENDING,
        progress_message: Optional[str] = None,
        max_runtime_minutes: Optional[int] = None,
        heartbeat_interval_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Insert a new scan row with its timeout settings captured."""
        _require_id(site_id, "site_id")
        _require_id(user_id, "user_id")
        if status not in states.ACTIVE_STATUSES:
            raise ValueError(f"A scan must start as pending or running, not {status!r}")
        if max_runtime_minutes is None:
            max_runtime_minutes = self.default_max_runtime_minutes
        if heartbeat_interval_seconds is None:
            heartbeat_interval_seconds = self.default_heartbeat_interval_seconds
        _require_positive(max_runtime_minutes, "max_runtime_minutes")
        _require_positive(heartbeat_interval_seconds, "heartbeat_interval_seconds")

        now = utcnow()
        scan_id = str(uuid.uuid4())
        values = {
            "id": scan_id,
            "site_id": site_id,
            "user_id": user_id,
            "status": status,
            "progress_message": progress_message,
            "max_runtime_minutes": max_runtime_minutes,
            "heartbeat_interval_seconds": heartbeat_interval_seconds,
            "created_at": now,
            "started_at": now if status == states.RUNNING else None,
            "last_activity_at": now,
            "updated_at": now,
        }

        outcome = self._run("create_scan", scan_id, lambda: self.store.insert_scan(values))
        if not outcome.succeeded:
            return _failure(outcome)

        logger.info(f"Created scan {scan_id} for site {site_id} ({status})")
        self._log_event(
            scan_id,
            "scan_started",
            {"site_id": site_id, "user_id": user_id, "initial_status": status},
        )
        self.analytics.started(scan_id, site_id, user_id, initial_status=status)
        return {"success": True, "scan_id": scan_id, "attempts": outcome.attempts}

    def update_with_recovery(self, scan_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply *patch* through the guarded write, retrying schema cache misses.

        The write only lands if the scan's status allows it; repeating the
        status a scan already holds is reported as ``no_op``.
        """
        _require_id(scan_id, "scan_id")
        if not isinstance(patch, dict) or not patch:
            raise ValueError("patch must be a non-empty dict")
        touched = [f for f in IMMUTABLE_FIELDS if f in patch]
        if touched:
            raise ValueError(f"patch may not change immutable fields: {', '.join(touched)}")

        values = dict(patch)
        target = values.get("status")
        states.allowed_sources(target)  # raises ValueError for unknown/pending targets
        _check_terminal_fields(target, values)
        if target is not None:
            now = utcnow()
            values.setdefault("last_activity_at", now)
            if target == states.RUNNING:
                values.setdefault("started_at", now)
            if states.is_terminal(target):
                values.setdefault("ended_at", now)

        outcome = self._run("update_scan", scan_id, lambda: self.store.update_scan(scan_id, values))
        return _write_result(outcome)

    def mark_running(self, scan_id: str, progress_message: Optional[str] = None) -> Dict[str, Any]:
        """Move a pending scan to running once its worker has picked it up."""
        patch = {"status": states.RUNNING}
        if progress_message is not None:
            patch["progress_message"] = progress_message
        result = self.update_with_recovery(scan_id, patch)
        if result["success"] and not result["no_op"]:
            self._log_event(scan_id, "scan_running", {"progress_message": progress_message})
            self.analytics.running(scan_id)
        return result

    def update_heartbeat(
        self,
        scan_id: str,
        progress_message: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record worker liveness.

        Rejected with InvalidTransition once the scan is terminal, which is
        the worker's signal that someone else (usually the cleanup sweep)
        closed the scan and it should stop.
        """
        _require_id(scan_id, "scan_id")
        logger.debug(f"Updating heartbeat for scan {scan_id}{': ' + progress_message if progress_message else ''}")

        outcome = self._run(
            "update_heartbeat",
            scan_id,
            lambda: self.store.update_heartbeat(scan_id, progress_message, utcnow()),
        )
        if not outcome.succeeded:
            return _failure(outcome)

        self._log_event(scan_id, "heartbeat_updated", {"progress_message": progress_message})
        self.analytics.progress(scan_id, user_id, progress_message or "Heartbeat updated")
        return {"success": True, "attempts": outcome.attempts}

    def transition_to_terminal(
        self,
        scan_id: str,
        status: str,
        user_id: Optional[str] = None,
        results: Any = None,
        error_message: Optional[str] = None,
        progress_message: Optional[str] = None,
        site_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Close a scan as completed or failed.

        Repeating the same terminal status is a successful no-op so workers
        can deliver at-least-once; a different terminal status is rejected.
        """
        _require_id(scan_id, "scan_id")
        if not states.is_terminal(status):
            raise ValueError(f"status must be 'completed' or 'failed', not {status!r}")

        if status == states.COMPLETED and error_message:
            raise ValueError("error_message is only valid for failed scans")
        if status == states.FAILED and not error_message:
            raise ValueError("A failed scan requires an error_message")
        if status == states.FAILED:
            results = None

        started = time.monotonic()
        logger.info(f"Transitioning scan {scan_id} to {status}")
        outcome = self._run(
            "transition_to_terminal",
            scan_id,
            lambda: self.store.transition_to_terminal(
                scan_id,
                status,
                end_time=utcnow(),
                error_message=error_message,
                progress_message=progress_message,
                results=results,
            ),
        )
        result = _write_result(outcome)
        if not result["success"]:
            logger.error(f"Failed to transition scan {scan_id} to {status}: {result['error']}")
            return result
        if result["no_op"]:
            logger.info(f"Scan {scan_id} was already {status}")
            return result

        duration_ms = int((time.monotonic() - started) * 1000)
        self._log_event(
            scan_id,
            "scan_completed" if status == states.COMPLETED else "scan_failed",
            {
                "error_message": error_message,
                "duration_ms": duration_ms,
                "recovery_attempts": len(result["recovery_attempts"]),
                "results": results,
            },
        )
        if status == states.COMPLETED:
            self.analytics.completed(
                scan_id, site_id, user_id, recovery_attempts=len(result["recovery_attempts"])
            )
        else:
            self.analytics.failed(
                scan_id, site_id, user_id, error_message,
                recovery_attempts=len(result["recovery_attempts"]),
            )
        logger.info(f"Scan {scan_id} transitioned to {status}")
        return result

    def get_scan_status(self, scan_id: str) -> Dict[str, Any]:
        """Read a scan and report whether its heartbeat has gone stale."""
        _require_id(scan_id, "scan_id")
        try:
            scan = self.store.get_scan(scan_id)
        except ScanLifecycleError as e:
            return e.to_result()
        if scan is None:
            return {"success": False, "error": f"Scan {scan_id} not found", "error_code": NOT_FOUND}

        last_activity = scan.get("last_activity_at") or scan["created_at"]
        heartbeat_age = (utcnow() - last_activity).total_seconds()
        threshold = scan["heartbeat_interval_seconds"] * states.STALENESS_MULTIPLIER
        is_stale = not states.is_terminal(scan["status"]) and heartbeat_age > threshold

        return {
            "success": True,
            "scan": scan,
            "is_stale": is_stale,
            "heartbeat_age_seconds": round(heartbeat_age, 1),
        }
