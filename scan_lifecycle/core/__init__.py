from scan_lifecycle.core.errors import (
    ScanLifecycleError,
    ScanNotFoundError,
    InvalidTransitionError,
    SchemaCacheError,
    StorageError,
)
from scan_lifecycle.core.lifecycle import ScanLifecycleManager, LifecycleOptions
from scan_lifecycle.core.maintenance import ScanMaintenanceManager, CleanupCriteria

__all__ = [
    "ScanLifecycleError",
    "ScanNotFoundError",
    "InvalidTransitionError",
    "SchemaCacheError",
    "StorageError",
    "ScanLifecycleManager",
    "LifecycleOptions",
    "ScanMaintenanceManager",
    "CleanupCriteria",
]
