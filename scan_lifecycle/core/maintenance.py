"""Fleet-wide scan maintenance.

Runs from a schedule, independent of any scan's worker: finds scans whose
worker has most likely died, force-fails them, and reports coarse health
numbers for dashboards. Candidate selection is a single storage query and
each force-fail is guarded on the scan still being active, so a scan that
completes mid-sweep keeps its result.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from scan_lifecycle.core import states
from scan_lifecycle.core.errors import (
    INVALID_TRANSITION,
    NOT_FOUND,
    ScanLifecycleError,
)
from scan_lifecycle.core.retry import RetryPolicy
from scan_lifecycle.core.schema_cache import SchemaCacheRefresher
from scan_lifecycle.utils.analytics import ScanAnalytics
from scan_lifecycle.utils.timestamps import minutes_between, utcnow

logger = logging.getLogger("scan_lifecycle.maintenance")

RUNTIME_TIMEOUT = "runtime_timeout"
HEARTBEAT_STALE = "heartbeat_stale"


@dataclass(frozen=True)
class CleanupCriteria:
    max_runtime_minutes: float = 15
    heartbeat_stale_minutes: float = 5

    def __post_init__(self):
        if self.max_runtime_minutes <= 0 or self.heartbeat_stale_minutes <= 0:
            raise ValueError("cleanup thresholds must be positive")

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "CleanupCriteria":
        return cls(
            max_runtime_minutes=section.get("max_runtime_minutes", cls.max_runtime_minutes),
            heartbeat_stale_minutes=section.get("heartbeat_stale_minutes", cls.heartbeat_stale_minutes),
        )


def cleanup_message(reason: str, criteria: CleanupCriteria) -> str:
    if reason == RUNTIME_TIMEOUT:
        return f"Automated cleanup: exceeded max runtime of {criteria.max_runtime_minutes:g} minutes"
    return f"Automated cleanup: no heartbeat for more than {criteria.heartbeat_stale_minutes:g} minutes"


class ScanMaintenanceManager:
    def __init__(
        self,
        store,
        retry_policy: Optional[RetryPolicy] = None,
        schema_refresher: Optional[Callable[[], Dict[str, Any]]] = None,
        default_criteria: Optional[CleanupCriteria] = None,
        environment: str = "production",
        environment_criteria: Optional[Dict[str, CleanupCriteria]] = None,
        health_window_hours: float = 24,
        enable_analytics: bool = True,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.schema_refresher = schema_refresher or SchemaCacheRefresher(None)
        self.default_criteria = default_criteria or CleanupCriteria()
        self.environment = environment
        self.environment_criteria = environment_criteria or {}
        self.health_window_hours = health_window_hours
        self.analytics = ScanAnalytics(enabled=enable_analytics)

    def _log_maintenance_event(self, maintenance_type: str, data: Dict[str, Any]) -> None:
        try:
            self.store.record_event(
                None,
                "cleanup_performed",
                {"maintenance_type": maintenance_type, "timestamp": utcnow().isoformat(), **data},
            )
        except ScanLifecycleError as e:
            logger.warning(f"Failed to log maintenance event {maintenance_type}: {e.message}")

    def _force_fail(self, scan_id: str, error_message: str, progress_message: str):
        return self.retry_policy.run(
            lambda: self.store.transition_to_terminal(
                scan_id,
                states.FAILED,
                end_time=utcnow(),
                error_message=error_message,
                progress_message=progress_message,
            ),
            recover=self.schema_refresher,
            label=f"force-fail scan {scan_id}",
        )

    def get_environment_criteria(self) -> CleanupCriteria:
        """Thresholds for the current deployment environment."""
        return self.environment_criteria.get(self.environment, self.default_criteria)

    def cleanup_stuck_scans(
        self,
        criteria: Optional[CleanupCriteria] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        criteria = criteria or self.default_criteria
        logger.info(
            f"{'DRY RUN: ' if dry_run else ''}Cleaning up stuck scans "
            f"(max runtime {criteria.max_runtime_minutes:g}min, "
            f"heartbeat stale {criteria.heartbeat_stale_minutes:g}min)"
        )

        result: Dict[str, Any] = {
            "success": True,
            "dry_run": dry_run,
            "criteria": asdict(criteria),
            "cleaned_count": 0,
            "scans_processed": [],
            "skipped": [],
            "errors": [],
            "cleaned_scan_ids": [],
        }

        try:
            candidates = self.store.find_stuck_scans(
                criteria.max_runtime_minutes, criteria.heartbeat_stale_minutes
            )
        except ScanLifecycleError as e:
            logger.error(f"Stuck scan selection failed: {e.message}")
            result["success"] = False
            result["errors"].append({"scan_id": None, "error": e.message})
            return result

        result["scans_processed"] = candidates
        if dry_run:
            for scan in candidates:
                logger.info(
                    f"Would clean scan {scan['scan_id']}: {scan['reason']} "
                    f"(age {scan['age_minutes']}min, heartbeat {scan['heartbeat_age_minutes']}min)"
                )
            return result

        for scan in candidates:
            scan_id = scan["scan_id"]
            outcome = self._force_fail(
                scan_id,
                cleanup_message(scan["reason"], criteria),
                "Scan terminated by automated cleanup",
            )

            if not outcome.succeeded:
                error = outcome.error
                if error.error_code in (INVALID_TRANSITION, NOT_FOUND):
                    # finished or vanished between selection and cleanup
                    result["skipped"].append(
                        {"scan_id": scan_id, "reason": error.error_code, "error": error.message}
                    )
                    logger.info(f"Skipped scan {scan_id}: {error.message}")
                else:
                    result["errors"].append({"scan_id": scan_id, "error": error.message})
                    logger.error(f"Failed to clean up scan {scan_id}: {error.message}")
                continue

            if not outcome.value.get("applied", True):
                result["skipped"].append(
                    {"scan_id": scan_id, "reason": "already_failed", "error": None}
                )
                continue

            result["cleaned_count"] += 1
            result["cleaned_scan_ids"].append(scan_id)
            logger.info(
                f"Cleaned scan {scan_id}: {scan['reason']} "
                f"(age {scan['age_minutes']}min, heartbeat {scan['heartbeat_age_minutes']}min)"
            )
            self.analytics.failed(
                scan_id, None, None, f"Cleanup: {scan['reason']}",
                cleanup_reason=scan["reason"],
                age_minutes=scan["age_minutes"],
                heartbeat_age_minutes=scan["heartbeat_age_minutes"],
            )

        if result["errors"]:
            result["success"] = False
        if result["cleaned_count"]:
            self._log_maintenance_event(
                "cleanup_stuck_scans",
                {
                    "cleaned_count": result["cleaned_count"],
                    "criteria": result["criteria"],
                    "error_count": len(result["errors"]),
                    "scan_ids": result["cleaned_scan_ids"],
                },
            )

        logger.info(
            f"Cleaned {result['cleaned_count']} of {len(candidates)} stuck scan(s), "
            f"{len(result['skipped'])} skipped, {len(result['errors'])} error(s)"
        )
        return result

    def get_scan_health_metrics(self, criteria: Optional[CleanupCriteria] = None) -> Dict[str, Any]:
        """Coarse health numbers over the recent window, for dashboards only."""
        criteria = criteria or self.default_criteria
        now = utcnow()
        since = now - timedelta(hours=self.health_window_hours)

        try:
            scans = self.store.list_scans_since(since)
        except ScanLifecycleError as e:
            logger.error(f"Failed to fetch scans for health metrics: {e.message}")
            return e.to_result()

        running_scans = 0
        stale_scans = 0
        timeout_scans = 0
        oldest_running = 0.0
        finished_runtimes: List[float] = []

        for scan in scans:
            runtime = minutes_between(scan["created_at"], now)
            if scan["status"] == states.RUNNING:
                running_scans += 1
                heartbeat_age = minutes_between(scan.get("last_activity_at") or scan["created_at"], now)
                if heartbeat_age > criteria.heartbeat_stale_minutes:
                    stale_scans += 1
                if runtime > criteria.max_runtime_minutes:
                    timeout_scans += 1
                oldest_running = max(oldest_running, runtime)
            elif states.is_terminal(scan["status"]):
                finished_runtimes.append(minutes_between(scan["created_at"], scan.get("ended_at") or now))

        health_score = 100.0
        if running_scans:
            stale_pct = stale_scans / running_scans * 100
            timeout_pct = timeout_scans / running_scans * 100
            health_score = min(100.0, max(0.0, 100 - stale_pct - timeout_pct))

        average_runtime = sum(finished_runtimes) / len(finished_runtimes) if finished_runtimes else 0.0

        metrics = {
            "success": True,
            "total_scans": len(scans),
            "running_scans": running_scans,
            "stale_scans": stale_scans,
            "timeout_scans": timeout_scans,
            "average_runtime_minutes": round(average_runtime, 2),
            "oldest_running_minutes": round(oldest_running, 2),
            "health_score": round(health_score),
        }
        logger.info(f"Health metrics: {metrics}")
        return metrics

    def validate_scan_health(self, scan_id: str) -> Dict[str, Any]:
        """Check one scan against its own stored limits.

        Issues are human-readable so an admin UI can show them as-is.
        """
        try:
            scan = self.store.get_scan(scan_id)
        except ScanLifecycleError as e:
            return {"healthy": False, "issues": [f"Validation error: {e.message}"], "scan": None}
        if scan is None:
            return {"healthy": False, "issues": [f"Scan not found: {scan_id}"], "scan": None}

        issues = []
        now = utcnow()
        status = scan["status"]

        if not states.is_terminal(status):
            runtime = minutes_between(scan["created_at"], now)
            max_runtime = scan.get("max_runtime_minutes") or self.default_criteria.max_runtime_minutes
            if runtime > max_runtime:
                issues.append(f"Runtime exceeded: {round(runtime)}m > {max_runtime}m limit")

            heartbeat_age = minutes_between(scan.get("last_activity_at") or scan["created_at"], now)
            interval = scan.get("heartbeat_interval_seconds") or 30
            if heartbeat_age * 60 > interval * states.STALENESS_MULTIPLIER:
                issues.append(f"Heartbeat stale: last activity {round(heartbeat_age)}m ago")
        elif not scan.get("ended_at"):
            issues.append("Terminal state missing ended_at timestamp")

        return {"healthy": not issues, "issues": issues, "scan": scan}

    def mark_scan_as_failed(
        self,
        scan_id: str,
        reason: str = "Manual intervention",
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Manual override: fail a scan with an operator-supplied reason."""
        if not isinstance(scan_id, str) or not scan_id.strip():
            raise ValueError("scan_id must be a non-empty string")
        if not reason or not reason.strip():
            raise ValueError("reason must be a non-empty string")

        logger.info(f"Manually marking scan {scan_id} as failed: {reason}")
        started = time.monotonic()
        outcome = self._force_fail(scan_id, reason, "Scan manually marked as failed")
        if not outcome.succeeded:
            logger.error(f"Failed to mark scan {scan_id} as failed: {outcome.error.message}")
            result = outcome.error.to_result()
            result["attempts"] = outcome.attempts
            return result

        no_op = not outcome.value.get("applied", True)
        if not no_op:
            self._log_maintenance_event(
                "manual_scan_failure",
                {
                    "scan_id": scan_id,
                    "reason": reason,
                    "user_id": user_id,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            self.analytics.failed(scan_id, None, user_id, reason, manual_intervention=True)
        return {"success": True, "no_op": no_op, "attempts": outcome.attempts}

    def run_maintenance_cycle(self, dry_run: bool = False) -> Dict[str, Any]:
        """Cleanup plus health metrics plus recommendations, for the scheduler."""
        criteria = self.get_environment_criteria()
        logger.info(f"{'DRY RUN: ' if dry_run else ''}Running maintenance cycle ({self.environment})")

        cleanup = self.cleanup_stuck_scans(criteria, dry_run=dry_run)
        metrics = self.get_scan_health_metrics(criteria)
        recommendations = build_recommendations(metrics)

        logger.info(f"Maintenance cycle complete. Health score: {metrics.get('health_score', 'n/a')}")
        return {
            "environment": self.environment,
            "cleanup": cleanup,
            "health_metrics": metrics,
            "recommendations": recommendations,
        }


def build_recommendations(metrics: Dict[str, Any]) -> List[str]:
    if not metrics.get("success"):
        return [f"Health metrics unavailable: {metrics.get('error')}"]

    recommendations = []
    if metrics["health_score"] < 80:
        recommendations.append(
            f"Health score is low ({metrics['health_score']}%). Investigate scan reliability."
        )
    if metrics["stale_scans"]:
        recommendations.append(
            f"{metrics['stale_scans']} scan(s) have stale heartbeats. Check the scan worker environment."
        )
    if metrics["timeout_scans"]:
        recommendations.append(
            f"{metrics['timeout_scans']} scan(s) exceeded runtime limits. "
            "Consider raising timeouts or speeding up scans."
        )
    if metrics["average_runtime_minutes"] > 5:
        recommendations.append(
            f"Average runtime is high ({metrics['average_runtime_minutes']}min)."
        )
    return recommendations
