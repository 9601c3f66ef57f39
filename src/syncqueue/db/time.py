"""Time utilities for database models.

All sync bookkeeping is stored as integer epoch seconds so that stored
values, wire timestamps and last-write-wins comparisons share one unit.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]

DAY_SECONDS = 86_400


def epoch_now() -> int:
    """Return the current UTC time as whole epoch seconds."""
    return int(time.time())


def format_epoch(value: int | None) -> str:
    """Render an epoch timestamp for humans, or 'Never' when unset."""
    if not value:
        return "Never"
    return datetime.fromtimestamp(value, UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
