"""Telemetry events that never affect control flow.

Events are emitted as one JSON log line each on the ``scan_lifecycle.analytics``
logger, where a log shipper can pick them up.
"""

import json
import logging
from typing import Any, Dict, Optional

from scan_lifecycle.utils.timestamps import utcnow

logger = logging.getLogger("scan_lifecycle.analytics")


def safe_analytics(event_name: str, data: Dict[str, Any]) -> None:
    try:
        payload = {"event": event_name, "timestamp": utcnow().isoformat()}
        payload.update(data)
        logger.info("%s: %s", event_name, json.dumps(payload, default=str, sort_keys=True))
    except (TypeError, ValueError) as e:
        logger.debug(f"Failed to emit analytics event {event_name}: {e}")


class ScanAnalytics:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def _emit(self, event_name: str, data: Dict[str, Any]) -> None:
        if self.enabled:
            safe_analytics(event_name, data)

    def started(self, scan_id: str, site_id: str, user_id: str, **metadata) -> None:
        self._emit("scan_started", {"scan_id": scan_id, "site_id": site_id, "user_id": user_id, **metadata})

    def running(self, scan_id: str, **metadata) -> None:
        self._emit("scan_running", {"scan_id": scan_id, **metadata})

    def progress(self, scan_id: str, user_id: Optional[str], message: str) -> None:
        self._emit("scan_progress", {"scan_id": scan_id, "user_id": user_id, "message": message})

    def completed(self, scan_id: str, site_id: Optional[str], user_id: Optional[str], **metadata) -> None:
        self._emit("scan_completed", {"scan_id": scan_id, "site_id": site_id, "user_id": user_id, **metadata})

    def failed(self, scan_id: str, site_id: Optional[str], user_id: Optional[str], error: str, **metadata) -> None:
        self._emit(
            "scan_failed",
            {"scan_id": scan_id, "site_id": site_id, "user_id": user_id, "error": error, **metadata},
        )
