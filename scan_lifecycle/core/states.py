PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

ACTIVE_STATUSES = (PENDING, RUNNING)
TERMINAL_STATUSES = (COMPLETED, FAILED)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

# target status -> statuses it may be entered from
_SOURCES = {
    RUNNING: (PENDING,),
    COMPLETED: ACTIVE_STATUSES,
    FAILED: ACTIVE_STATUSES,
}

# "no heartbeat for two expected intervals"
STALENESS_MULTIPLIER = 2


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES


def allowed_sources(target_status=None) -> tuple:
    """Statuses a row must currently hold for a write to apply.

    A write without a status change (heartbeat, message update) is allowed on
    any active scan; nothing is ever written to a terminal scan.
    """
    if target_status is None:
        return ACTIVE_STATUSES
    if target_status not in _SOURCES:
        raise ValueError(f"Unknown target status: {target_status!r}")
    return _SOURCES[target_status]


def can_transition(current_status: str, target_status: str) -> bool:
    return current_status in _SOURCES.get(target_status, ())
