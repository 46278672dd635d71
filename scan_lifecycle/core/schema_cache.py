"""Schema cache recovery.

PostgREST keeps a cached view of the table schema. After a migration adds a
column, writes naming that column can fail with PGRST204 until the cache is
reloaded. This module recognises that failure and asks the gateway to reload.
"""

import logging
import random
import re
import time
from collections.abc import Mapping
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger("scan_lifecycle.schema_cache")

SCHEMA_CACHE_CODE = "PGRST204"

_SCHEMA_CACHE_MESSAGE = re.compile(
    r"column\s+.+?\s+does not exist in the schema cache", re.IGNORECASE
)

MAX_BACKOFF_MS = 10000
JITTER_RATIO = 0.3


def _error_field(error: Any, name: str) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, Mapping):
        value = error.get(name)
    else:
        value = getattr(error, name, None)
    return None if value is None else str(value)


def is_schema_cache_error(error: Any) -> bool:
    """Return True when *error* carries the stale schema cache signature.

    Works on exceptions, mappings (decoded PostgREST error bodies) and any
    object exposing ``code``/``message``.
    """
    if error is None:
        return False
    code = _error_field(error, "code") or _error_field(error, "error_code")
    if code and code.upper() == SCHEMA_CACHE_CODE:
        return True
    message = _error_field(error, "message")
    if message is None and isinstance(error, BaseException):
        message = str(error)
    return bool(message and _SCHEMA_CACHE_MESSAGE.search(message))


def classify_database_error(error: Any) -> Dict[str, Any]:
    """Coarse classification used for log context."""
    if error is None:
        return {"type": "unknown", "recoverable": False, "retryable": False}

    if is_schema_cache_error(error):
        return {"type": "schema_cache", "recoverable": True, "retryable": True}

    code = _error_field(error, "code") or ""
    message = (_error_field(error, "message") or str(error)).lower()

    if code == "42501" or "permission denied" in message:
        return {"type": "permission", "recoverable": False, "retryable": False}
    if code in ("23505", "23503", "23514") or "violates" in message:
        return {"type": "validation", "recoverable": False, "retryable": False}
    if "connection" in message or "timeout" in message or "timed out" in message:
        return {"type": "connection", "recoverable": False, "retryable": True}
    return {"type": "unknown", "recoverable": False, "retryable": False}


def calculate_backoff_delay(attempt: int, base_delay_ms: float = 1000) -> int:
    """Exponential backoff in milliseconds, capped, with up to 30% jitter."""
    exponential = min(base_delay_ms * (2 ** attempt), MAX_BACKOFF_MS)
    jitter = random.random() * JITTER_RATIO * exponential
    return int(exponential + jitter)


class SchemaCacheRefresher:
    """Asks the REST gateway to reload its schema cache.

    Calling the instance never raises; the outcome is reported in the returned
    dict (``success``, ``method`` and, on failure, ``error``).
    """

    def __init__(
        self,
        gateway_url: Optional[str],
        service_key: Optional[str] = None,
        reload_rpc: Optional[str] = None,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.gateway_url = gateway_url.rstrip("/") if gateway_url else None
        self.service_key = service_key
        self.reload_rpc = reload_rpc
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
            headers["apikey"] = self.service_key
        return headers

    def _post(self, url: str, extra_headers: Optional[Dict[str, str]] = None):
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)
        response = self.session.post(url, headers=headers, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise requests.HTTPError(
                f"{url} returned HTTP {response.status_code}", response=response
            )
        return response

    def __call__(self) -> Dict[str, Any]:
        return self.refresh()

    def refresh(self) -> Dict[str, Any]:
        if not self.gateway_url:
            logger.warning("Schema cache refresh skipped: no REST gateway configured")
            return {
                "success": False,
                "method": "none",
                "error": "No REST gateway configured for schema refresh",
            }

        logger.info("Attempting schema cache refresh via %s", self.gateway_url)
        try:
            self._post(f"{self.gateway_url}/rest/v1/")
            logger.info("Schema cache refreshed via PostgREST admin endpoint")
            return {"success": True, "method": "postgrest_admin"}
        except requests.RequestException as exc:
            admin_error = str(exc)
            logger.warning("PostgREST admin schema refresh failed: %s", admin_error)

        if self.reload_rpc:
            try:
                self._post(
                    f"{self.gateway_url}/rest/v1/rpc/{self.reload_rpc}",
                    {"Prefer": "return=minimal"},
                )
                logger.info("Schema cache refresh requested via RPC %s", self.reload_rpc)
                return {"success": True, "method": "supabase_rpc"}
            except requests.RequestException as exc:
                logger.warning("Schema refresh RPC %s failed: %s", self.reload_rpc, exc)
                return {"success": False, "method": "supabase_rpc", "error": str(exc)}

        return {"success": False, "method": "postgrest_admin", "error": admin_error}


def refresh_schema_cache(
    gateway_url: Optional[str],
    service_key: Optional[str] = None,
    reload_rpc: Optional[str] = None,
    timeout: float = 5.0,
) -> Dict[str, Any]:
    """One-shot convenience wrapper around :class:`SchemaCacheRefresher`."""
    started = time.monotonic()
    result = SchemaCacheRefresher(gateway_url, service_key, reload_rpc, timeout).refresh()
    logger.debug(
        "Schema refresh finished in %.0fms (success=%s)",
        (time.monotonic() - started) * 1000,
        result["success"],
    )
    return result
