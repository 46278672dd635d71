"""Error taxonomy shared by the stores and the managers.

Stores raise these; the managers turn them into result dicts so callers never
need try/except around a lifecycle call.
"""

from typing import Any, Dict, Optional

NOT_FOUND = "NotFound"
INVALID_TRANSITION = "InvalidTransition"
SCHEMA_CACHE = "SchemaCacheError"
STORAGE = "StorageError"


class ScanLifecycleError(Exception):
    """Base class. ``code`` is the backend's own code (e.g. PGRST204, 23505)."""

    error_code = STORAGE

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_result(self) -> Dict[str, Any]:
        result = {"success": False, "error": self.message, "error_code": self.error_code}
        if self.code:
            result["code"] = self.code
        return result


class ScanNotFoundError(ScanLifecycleError):
    error_code = NOT_FOUND


class InvalidTransitionError(ScanLifecycleError):
    error_code = INVALID_TRANSITION

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status

    def to_result(self) -> Dict[str, Any]:
        result = super().to_result()
        result["current_status"] = self.current_status
        return result


class SchemaCacheError(ScanLifecycleError):
    error_code = SCHEMA_CACHE


class StorageError(ScanLifecycleError):
    error_code = STORAGE


class ConfigError(Exception):
    pass
