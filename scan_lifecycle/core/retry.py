"""Bounded retry with exponential backoff, shared by both managers.

Which errors are worth retrying is decided by the policy's classifier, so the
lifecycle and maintenance code never carry their own retry loops.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from scan_lifecycle.core.errors import ScanLifecycleError
from scan_lifecycle.core.schema_cache import calculate_backoff_delay, is_schema_cache_error

logger = logging.getLogger("scan_lifecycle.retry")


class RetryOutcome:
    """Result of :meth:`RetryPolicy.run`.

    ``attempts`` counts every call of the operation, the first one included.
    ``recovery_attempts`` holds one entry per recovery hook run.
    """

    def __init__(self):
        self.value: Any = None
        self.error: Optional[ScanLifecycleError] = None
        self.attempts = 0
        self.recovery_attempts: List[Dict[str, Any]] = []

    @property
    def succeeded(self) -> bool:
        return self.error is None


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay_ms: float = 1000,
        is_retryable: Callable[[Any], bool] = is_schema_cache_error,
        backoff: Callable[[int, float], float] = calculate_backoff_delay,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.is_retryable = is_retryable
        self.backoff = backoff
        self.sleep = sleep

    def delay_ms(self, attempt: int) -> float:
        return self.backoff(attempt, self.base_delay_ms)

    def run(
        self,
        operation: Callable[[], Any],
        recover: Optional[Callable[[], Dict[str, Any]]] = None,
        label: str = "operation",
    ) -> RetryOutcome:
        """Call *operation* until it succeeds or retrying stops making sense.

        Only :class:`ScanLifecycleError` is caught; anything else is a bug and
        propagates. Before each retry *recover* (if given) is called and its
        result recorded.
        """
        outcome = RetryOutcome()

        for attempt in range(self.max_retries + 1):
            outcome.attempts += 1
            try:
                outcome.value = operation()
                outcome.error = None
                if attempt:
                    logger.info("%s succeeded on attempt %d", label, attempt + 1)
                return outcome
            except ScanLifecycleError as exc:
                outcome.error = exc

            if not self.is_retryable(outcome.error):
                logger.debug("%s failed with non-retryable %s", label, outcome.error.error_code)
                return outcome
            if attempt >= self.max_retries:
                break

            logger.warning(
                "%s hit a retryable error (attempt %d/%d): %s",
                label,
                attempt + 1,
                self.max_retries + 1,
                outcome.error.message,
            )

            if recover is not None:
                started = time.monotonic()
                recovery = recover()
                outcome.recovery_attempts.append(
                    {
                        "attempt": attempt + 1,
                        "error": outcome.error.message,
                        "recovery_method": recovery.get("method"),
                        "success": bool(recovery.get("success")),
                        "duration_ms": int((time.monotonic() - started) * 1000),
                    }
                )

            delay = self.delay_ms(attempt)
            logger.debug("Waiting %dms before retrying %s", delay, label)
            self.sleep(delay / 1000.0)

        logger.error("%s gave up after %d attempts", label, outcome.attempts)
        return outcome
