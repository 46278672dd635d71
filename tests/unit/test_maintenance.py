from unittest.mock import patch

import pytest

from scan_lifecycle.core.errors import StorageError
from scan_lifecycle.core.maintenance import (
    CleanupCriteria,
    ScanMaintenanceManager,
    build_recommendations,
)


def _running(lifecycle, **kwargs):
    return lifecycle.create_scan("site-1", "user-1", status="running", **kwargs)["scan_id"]


def test_cleanup_criteria_must_be_positive():
    with pytest.raises(ValueError):
        CleanupCriteria(0, 5)
    with pytest.raises(ValueError):
        CleanupCriteria(15, -1)


def test_cleanup_criteria_from_config_falls_back_to_defaults():
    criteria = CleanupCriteria.from_config({"max_runtime_minutes": 20})
    assert criteria == CleanupCriteria(20, 5)


def test_find_candidates_classifies_reasons(lifecycle, maintenance, age_scan):
    timed_out = _running(lifecycle)
    stale = _running(lifecycle)
    healthy = _running(lifecycle)
    age_scan(timed_out, created=20, activity=1)
    age_scan(stale, created=8, activity=7)
    age_scan(healthy, created=3, activity=0.5)

    result = maintenance.cleanup_stuck_scans(dry_run=True)

    reasons = {s["scan_id"]: s["reason"] for s in result["scans_processed"]}
    assert reasons == {timed_out: "runtime_timeout", stale: "heartbeat_stale"}


def test_runtime_timeout_takes_precedence(lifecycle, maintenance, age_scan):
    scan_id = _running(lifecycle)
    age_scan(scan_id, created=30, activity=29)

    [candidate] = maintenance.cleanup_stuck_scans(dry_run=True)["scans_processed"]

    assert candidate["reason"] == "runtime_timeout"
    assert candidate["age_minutes"] >= 30
    assert candidate["heartbeat_age_minutes"] >= 29


def test_dry_run_issues_no_writes(lifecycle, maintenance, store, age_scan):
    scan_ids = [_running(lifecycle) for _ in range(3)]
    for scan_id in scan_ids:
        age_scan(scan_id, created=30, activity=30)

    with patch.object(store, "transition_to_terminal") as transition, \
            patch.object(store, "update_scan") as update_scan, \
            patch.object(store, "record_event") as record_event:
        result = maintenance.cleanup_stuck_scans(dry_run=True)

    assert result["dry_run"] is True
    assert result["success"] is True
    assert result["cleaned_count"] == 0
    assert len(result["scans_processed"]) == 3
    transition.assert_not_called()
    update_scan.assert_not_called()
    record_event.assert_not_called()
    assert all(store.get_scan(s)["status"] == "running" for s in scan_ids)


def test_live_cleanup_fails_stuck_scans(lifecycle, maintenance, store, age_scan):
    stale = _running(lifecycle)
    age_scan(stale, created=10, activity=9)

    result = maintenance.cleanup_stuck_scans()

    assert result["cleaned_count"] == 1
    assert result["errors"] == []
    scan = store.get_scan(stale)
    assert scan["status"] == "failed"
    assert scan["ended_at"] is not None
    assert scan["error_message"] == "Automated cleanup: no heartbeat for more than 5 minutes"
    assert scan["progress_message"] == "Scan terminated by automated cleanup"

    [event] = [e for e in store.list_events() if e["event_type"] == "cleanup_performed"]
    assert event["scan_id"] is None
    assert event["event_data"]["cleaned_count"] == 1


def test_one_failed_write_does_not_abort_sweep(lifecycle, maintenance, store, age_scan):
    scan_ids = [_running(lifecycle) for _ in range(4)]
    for scan_id in scan_ids:
        age_scan(scan_id, created=30, activity=30)
    broken = scan_ids[1]
    real_transition = store.transition_to_terminal

    def transition(scan_id, status, **kwargs):
        if scan_id == broken:
            raise StorageError("write rejected")
        return real_transition(scan_id, status, **kwargs)

    with patch.object(store, "transition_to_terminal", side_effect=transition):
        result = maintenance.cleanup_stuck_scans()

    assert result["cleaned_count"] == 3
    assert result["errors"] == [{"scan_id": broken, "error": "write rejected"}]
    assert result["success"] is False
    assert store.get_scan(broken)["status"] == "running"

    cleaned = [s for s in scan_ids if s != broken]
    assert sorted(result["cleaned_scan_ids"]) == sorted(cleaned)
    [event] = [e for e in store.list_events() if e["event_type"] == "cleanup_performed"]
    assert sorted(event["event_data"]["scan_ids"]) == sorted(cleaned)
    assert event["event_data"]["error_count"] == 1


def test_cleanup_event_omits_skipped_scans(lifecycle, maintenance, store, age_scan):
    finished = _running(lifecycle)
    stuck = _running(lifecycle)
    for scan_id in (finished, stuck):
        age_scan(scan_id, created=30, activity=30)
    real_find = store.find_stuck_scans

    def find_then_complete(*args, **kwargs):
        candidates = real_find(*args, **kwargs)
        lifecycle.transition_to_terminal(finished, "completed")
        return candidates

    with patch.object(store, "find_stuck_scans", side_effect=find_then_complete):
        result = maintenance.cleanup_stuck_scans()

    assert result["cleaned_scan_ids"] == [stuck]
    assert [s["scan_id"] for s in result["skipped"]] == [finished]
    [event] = [e for e in store.list_events() if e["event_type"] == "cleanup_performed"]
    assert event["event_data"]["scan_ids"] == [stuck]


def test_scan_completed_mid_sweep_is_skipped(lifecycle, maintenance, store, age_scan):
    scan_id = _running(lifecycle)
    age_scan(scan_id, created=30, activity=30)
    real_find = store.find_stuck_scans

    def find_then_complete(*args, **kwargs):
        candidates = real_find(*args, **kwargs)
        lifecycle.transition_to_terminal(scan_id, "completed", results={"violations": 2})
        return candidates

    with patch.object(store, "find_stuck_scans", side_effect=find_then_complete):
        result = maintenance.cleanup_stuck_scans()

    assert result["cleaned_count"] == 0
    assert result["errors"] == []
    assert result["skipped"][0]["scan_id"] == scan_id
    assert store.get_scan(scan_id)["status"] == "completed"


def test_selection_failure_is_reported(maintenance, store):
    with patch.object(store, "find_stuck_scans", side_effect=StorageError("timeout")):
        result = maintenance.cleanup_stuck_scans()

    assert result["success"] is False
    assert result["errors"] == [{"scan_id": None, "error": "timeout"}]


def test_health_metrics_over_three_scan_fixture(lifecycle, maintenance, age_scan):
    fresh = _running(lifecycle)
    stale = _running(lifecycle)
    done = _running(lifecycle)
    age_scan(fresh, created=2, activity=0.2)
    age_scan(stale, created=12, activity=10)
    lifecycle.transition_to_terminal(done, "completed", results={"passes": 1})

    metrics = maintenance.get_scan_health_metrics()

    assert metrics["success"] is True
    assert metrics["total_scans"] == 3
    assert metrics["running_scans"] == 2
    assert metrics["stale_scans"] == 1
    assert metrics["timeout_scans"] == 0
    assert metrics["health_score"] < 100
    assert metrics["health_score"] == 50
    assert metrics["oldest_running_minutes"] >= 12


def test_health_metrics_ignore_scans_outside_window(lifecycle, maintenance, age_scan):
    old = _running(lifecycle)
    age_scan(old, created=60 * 25, activity=60 * 25)

    metrics = maintenance.get_scan_health_metrics()

    assert metrics["total_scans"] == 0
    assert metrics["health_score"] == 100


def test_health_score_is_clamped(lifecycle, maintenance, age_scan):
    scan_id = _running(lifecycle)
    age_scan(scan_id, created=30, activity=30)

    metrics = maintenance.get_scan_health_metrics()

    assert metrics["stale_scans"] == 1
    assert metrics["timeout_scans"] == 1
    assert metrics["health_score"] == 0


def test_health_metrics_average_runtime(lifecycle, maintenance, age_scan):
    scan_id = _running(lifecycle)
    age_scan(scan_id, created=8, activity=8)
    lifecycle.transition_to_terminal(scan_id, "completed")

    metrics = maintenance.get_scan_health_metrics()

    assert 7.9 <= metrics["average_runtime_minutes"] <= 8.5


def test_validate_scan_health_uses_scan_limits(lifecycle, maintenance, age_scan):
    scan_id = _running(lifecycle, max_runtime_minutes=60, heartbeat_interval_seconds=30)
    age_scan(scan_id, created=20, activity=0.1)

    healthy = maintenance.validate_scan_health(scan_id)
    assert healthy["healthy"] is True
    assert healthy["issues"] == []

    age_scan(scan_id, created=90, activity=3)
    unhealthy = maintenance.validate_scan_health(scan_id)

    assert unhealthy["healthy"] is False
    assert unhealthy["issues"] == [
        "Runtime exceeded: 90m > 60m limit",
        "Heartbeat stale: last activity 3m ago",
    ]


def test_validate_scan_health_not_found(maintenance):
    result = maintenance.validate_scan_health("missing")
    assert result == {"healthy": False, "issues": ["Scan not found: missing"], "scan": None}


def test_validate_terminal_scan_without_ended_at(lifecycle, maintenance, store):
    scan_id = _running(lifecycle)
    with patch.object(store, "get_scan", return_value={**store.get_scan(scan_id), "status": "completed"}):
        result = maintenance.validate_scan_health(scan_id)
    assert result["issues"] == ["Terminal state missing ended_at timestamp"]


def test_mark_scan_as_failed(lifecycle, maintenance, store):
    scan_id = _running(lifecycle)

    result = maintenance.mark_scan_as_failed(scan_id, "Stuck on login page", user_id="admin-1")

    assert result["success"] is True
    scan = store.get_scan(scan_id)
    assert scan["status"] == "failed"
    assert scan["error_message"] == "Stuck on login page"
    assert scan["progress_message"] == "Scan manually marked as failed"
    events = [e for e in store.list_events() if e["event_type"] == "cleanup_performed"]
    assert events[0]["event_data"]["maintenance_type"] == "manual_scan_failure"
    assert events[0]["event_data"]["user_id"] == "admin-1"


def test_mark_failed_scan_again_is_no_op(lifecycle, maintenance, store):
    scan_id = _running(lifecycle)
    maintenance.mark_scan_as_failed(scan_id, "Stuck on login page")

    result = maintenance.mark_scan_as_failed(scan_id, "Second attempt")

    assert result["success"] is True
    assert result["no_op"] is True
    assert store.get_scan(scan_id)["error_message"] == "Stuck on login page"
    assert len([e for e in store.list_events() if e["event_type"] == "cleanup_performed"]) == 1


def test_mark_completed_scan_as_failed_is_rejected(lifecycle, maintenance, store):
    scan_id = _running(lifecycle)
    lifecycle.transition_to_terminal(scan_id, "completed")

    result = maintenance.mark_scan_as_failed(scan_id)

    assert result["success"] is False
    assert result["error_code"] == "InvalidTransition"
    assert store.get_scan(scan_id)["status"] == "completed"


def test_mark_missing_scan_as_failed(maintenance):
    result = maintenance.mark_scan_as_failed("missing")
    assert result["error_code"] == "NotFound"


def test_environment_criteria(store):
    manager = ScanMaintenanceManager(
        store,
        environment="development",
        environment_criteria={"development": CleanupCriteria(5, 2)},
    )
    assert manager.get_environment_criteria() == CleanupCriteria(5, 2)

    manager.environment = "unknown"
    assert manager.get_environment_criteria() == CleanupCriteria(15, 5)


def test_maintenance_cycle_uses_environment_criteria(lifecycle, maintenance, store, age_scan):
    maintenance.environment = "development"
    scan_id = _running(lifecycle)
    age_scan(scan_id, created=3, activity=3)

    result = maintenance.run_maintenance_cycle()

    assert result["environment"] == "development"
    assert result["cleanup"]["cleaned_count"] == 1
    assert result["cleanup"]["criteria"] == {"max_runtime_minutes": 5, "heartbeat_stale_minutes": 2}
    assert result["health_metrics"]["running_scans"] == 0
    assert store.get_scan(scan_id)["status"] == "failed"


def test_recommendations():
    metrics = {
        "success": True,
        "health_score": 50,
        "stale_scans": 1,
        "timeout_scans": 1,
        "average_runtime_minutes": 7.5,
    }
    recommendations = build_recommendations(metrics)
    assert len(recommendations) == 4
    assert "50%" in recommendations[0]

    healthy = {**metrics, "health_score": 100, "stale_scans": 0, "timeout_scans": 0, "average_runtime_minutes": 1}
    assert build_recommendations(healthy) == []
