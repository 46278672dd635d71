#!/usr/bin/env python3

import argparse
import json
import sys
from dataclasses import dataclass
from typing import Any, Dict

from scan_lifecycle.core.errors import ConfigError
from scan_lifecycle.core.lifecycle import LifecycleOptions, ScanLifecycleManager
from scan_lifecycle.core.maintenance import CleanupCriteria, ScanMaintenanceManager
from scan_lifecycle.core.schema_cache import SchemaCacheRefresher
from scan_lifecycle.utils.config import load_config, validate_config
from scan_lifecycle.utils.logger import setup_logger


@dataclass
class Services:
    config: Dict[str, Any]
    store: Any
    engine: Any
    lifecycle: ScanLifecycleManager
    maintenance: ScanMaintenanceManager


def build_store(storage: Dict[str, Any]):
    """Return (store, engine); engine is None for the PostgREST backend."""
    if storage["backend"] == "postgrest":
        from scan_lifecycle.store.postgrest_store import PostgrestScanStore

        store = PostgrestScanStore(
            storage["supabase_url"],
            storage["service_role_key"],
            timeout=float(storage.get("request_timeout") or 10),
        )
        return store, None

    from scan_lifecycle.store.db import create_db_engine
    from scan_lifecycle.store.scan_store import SqlScanStore

    engine = create_db_engine(storage.get("database_url"))
    return SqlScanStore(engine), engine


def bootstrap(config: Dict[str, Any], store=None) -> Services:
    """Wire managers from a validated config. Config is validated once, here."""
    validate_config(config)
    storage = config["storage"]
    engine = None
    if store is None:
        store, engine = build_store(storage)

    refresher = SchemaCacheRefresher(
        storage.get("supabase_url"),
        storage.get("service_role_key"),
        reload_rpc=storage.get("schema_reload_rpc"),
    )
    options = LifecycleOptions.from_config(config["lifecycle"])
    lifecycle = ScanLifecycleManager(
        store,
        options=options,
        schema_refresher=refresher,
        scan_defaults=config["scan_defaults"],
    )

    maintenance_config = config["maintenance"]
    maintenance = ScanMaintenanceManager(
        store,
        retry_policy=options.retry_policy(),
        schema_refresher=refresher,
        default_criteria=CleanupCriteria.from_config(maintenance_config),
        environment=maintenance_config["environment"],
        environment_criteria={
            name: CleanupCriteria.from_config(section)
            for name, section in maintenance_config["environments"].items()
        },
        health_window_hours=maintenance_config["health_window_hours"],
        enable_analytics=options.enable_analytics,
    )
    return Services(config, store, engine, lifecycle, maintenance)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description="Scan lifecycle maintenance tool")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML configuration")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("migrate", help="Apply pending database migrations")

    status = sub.add_parser("status", help="Show a scan and whether it is stale")
    status.add_argument("scan_id")

    cleanup = sub.add_parser("cleanup", help="Force-fail stuck scans")
    cleanup.add_argument("--dry-run", action="store_true", help="Report candidates without writing")
    cleanup.add_argument("--max-runtime", type=float, default=None, help="Max runtime in minutes")
    cleanup.add_argument("--heartbeat-stale", type=float, default=None, help="Heartbeat staleness in minutes")

    sub.add_parser("health", help="Show fleet health metrics")

    validate = sub.add_parser("validate", help="Check one scan against its limits")
    validate.add_argument("scan_id")

    mark_failed = sub.add_parser("mark-failed", help="Manually fail a scan")
    mark_failed.add_argument("scan_id")
    mark_failed.add_argument("--reason", type=str, default="Manual intervention")
    mark_failed.add_argument("--user-id", type=str, default=None)

    cycle = sub.add_parser("cycle", help="Run cleanup, health metrics and recommendations")
    cycle.add_argument("--dry-run", action="store_true")

    return parser.parse_args(argv)


def _criteria_from_args(args, default: CleanupCriteria) -> CleanupCriteria:
    return CleanupCriteria(
        max_runtime_minutes=args.max_runtime or default.max_runtime_minutes,
        heartbeat_stale_minutes=args.heartbeat_stale or default.heartbeat_stale_minutes,
    )


def run_command(args, services: Services) -> Dict[str, Any]:
    maintenance = services.maintenance

    if args.command == "migrate":
        if services.engine is None:
            return {"success": False, "error": "migrate is only available for the sql backend"}
        from scan_lifecycle.store.migrator import run_migrations

        return {"success": True, "applied": run_migrations(services.engine)}
    if args.command == "status":
        return services.lifecycle.get_scan_status(args.scan_id)
    if args.command == "cleanup":
        criteria = _criteria_from_args(args, maintenance.get_environment_criteria())
        return maintenance.cleanup_stuck_scans(criteria, dry_run=args.dry_run)
    if args.command == "health":
        return maintenance.get_scan_health_metrics()
    if args.command == "validate":
        result = maintenance.validate_scan_health(args.scan_id)
        return {"success": result["healthy"], **result}
    if args.command == "mark-failed":
        return maintenance.mark_scan_as_failed(args.scan_id, args.reason, args.user_id)
    if args.command == "cycle":
        result = maintenance.run_maintenance_cycle(dry_run=args.dry_run)
        return {"success": result["cleanup"]["success"] and result["health_metrics"]["success"], **result}
    raise ValueError(f"Unknown command {args.command!r}")


def log_summary(logger, command: str, result: Dict[str, Any]) -> None:
    if command in ("cleanup", "cycle"):
        cleanup = result.get("cleanup", result)
        logger.pretty_table(
            ["scan_id", "reason", "age_min", "heartbeat_min"],
            [
                [s["scan_id"], s["reason"], s["age_minutes"], s["heartbeat_age_minutes"]]
                for s in cleanup.get("scans_processed", [])
            ],
            title="Stuck scans",
        )
    if command == "health":
        logger.pretty_dict(result, title="Scan health")
    if command == "cycle":
        logger.pretty_dict(result.get("health_metrics", {}), title="Scan health")
        for recommendation in result.get("recommendations", []):
            logger.warning(recommendation)
    if result.get("success"):
        logger.success(f"{command} finished")


def main(argv=None, store=None) -> int:
    args = parse_arguments(argv)

    try:
        config = load_config(args.config)
        log_config = config["logging"]
        logger = setup_logger(
            "DEBUG" if args.verbose else log_config["level"],
            log_file=log_config.get("file"),
            enable_colors=log_config.get("colors", True),
        )
        services = bootstrap(config, store=store)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        result = run_command(args, services)
    except ValueError as e:
        logger.error(f"Invalid input: {e}")
        result = {"success": False, "error": str(e)}

    log_summary(logger, args.command, result)
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
