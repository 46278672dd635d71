import copy
import logging
import os
from typing import Any, Dict, Optional

import yaml

from scan_lifecycle.core.errors import ConfigError

logger = logging.getLogger("scan_lifecycle.config")

DEFAULT_CONFIG_PATH = "config/scan_lifecycle.yaml"

DEFAULT_CONFIG = {
    "lifecycle": {
        "max_retries": 3,
        "base_delay_ms": 1000,
        "enable_recovery": True,
        "enable_analytics": True,
    },
    "scan_defaults": {
        "max_runtime_minutes": 15,
        "heartbeat_interval_seconds": 30,
    },
    "maintenance": {
        "max_runtime_minutes": 15,
        "heartbeat_stale_minutes": 5,
        "health_window_hours": 24,
        "environment": "production",
        "environments": {
            "development": {"max_runtime_minutes": 5, "heartbeat_stale_minutes": 2},
            "staging": {"max_runtime_minutes": 10, "heartbeat_stale_minutes": 3},
            "preview": {"max_runtime_minutes": 10, "heartbeat_stale_minutes": 3},
            "production": {"max_runtime_minutes": 15, "heartbeat_stale_minutes": 5},
        },
    },
    "storage": {
        "backend": "sql",  # sql or postgrest
        "database_url": None,
        "supabase_url": None,
        "service_role_key": None,
        "schema_reload_rpc": None,
        "request_timeout": 10,
    },
    "logging": {
        "level": "INFO",
        "file": None,
        "colors": True,
    },
}

# env var -> (section, key)
ENV_OVERRIDES = {
    "DATABASE_URL": ("storage", "database_url"),
    "SUPABASE_URL": ("storage", "supabase_url"),
    "POSTGREST_URL": ("storage", "supabase_url"),
    "SUPABASE_SERVICE_ROLE_KEY": ("storage", "service_role_key"),
    "SCAN_STORE_BACKEND": ("storage", "backend"),
    "LOG_LEVEL": ("logging", "level"),
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a YAML file merged over defaults, then env."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    path = config_path or os.environ.get("SCAN_LIFECYCLE_CONFIG") or DEFAULT_CONFIG_PATH

    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read configuration {path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration {path} must be a mapping")
        _deep_merge(config, loaded)
        logger.info(f"Loaded configuration from {path}")
    elif config_path:
        raise ConfigError(f"Configuration file {config_path} not found")
    else:
        logger.debug(f"Configuration file {path} not found, using defaults")

    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[section][key] = value

    deployment_env = os.environ.get("DEPLOYMENT_ENV") or os.environ.get("VERCEL_ENV")
    if deployment_env:
        config["maintenance"]["environment"] = deployment_env


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, updating target with values from source."""
    for key, value in source.items():
        if key in target and isinstance(target[key], dict) and isinstance(value, dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value
    return target


def _positive_number(config: Dict[str, Any], section: str, key: str, allow_zero: bool = False) -> None:
    value = config[section][key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{section}.{key} must be positive, got {value!r}")


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Check a loaded config. Called once by the process bootstrap."""
    for section in DEFAULT_CONFIG:
        if not isinstance(config.get(section), dict):
            raise ConfigError(f"Missing configuration section: {section}")

    _positive_number(config, "lifecycle", "max_retries", allow_zero=True)
    _positive_number(config, "lifecycle", "base_delay_ms", allow_zero=True)
    _positive_number(config, "scan_defaults", "max_runtime_minutes")
    _positive_number(config, "scan_defaults", "heartbeat_interval_seconds")
    _positive_number(config, "maintenance", "max_runtime_minutes")
    _positive_number(config, "maintenance", "heartbeat_stale_minutes")
    _positive_number(config, "maintenance", "health_window_hours")

    for name, criteria in config["maintenance"]["environments"].items():
        for key in ("max_runtime_minutes", "heartbeat_stale_minutes"):
            value = criteria.get(key) if isinstance(criteria, dict) else None
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"maintenance.environments.{name}.{key} must be positive")

    storage = config["storage"]
    if storage["backend"] not in ("sql", "postgrest"):
        raise ConfigError(f"storage.backend must be 'sql' or 'postgrest', got {storage['backend']!r}")
    if storage["backend"] == "postgrest":
        if not storage.get("supabase_url"):
            raise ConfigError("storage.supabase_url is required for the postgrest backend")
        if not storage.get("service_role_key"):
            raise ConfigError("storage.service_role_key is required for the postgrest backend")

    return config
