"""Migration timestamp allocation.

Timestamps are 14-digit UTC strings (YYYYMMDDHHmmss). Each allocation is
strictly greater than the last one recorded in the build log, even when many
templates are built within the same second or the clock has moved backwards.
"""

from datetime import datetime, timezone
from typing import NamedTuple

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class TimestampAllocation(NamedTuple):
    timestamp: str
    new_last_timestamp: str


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def next_timestamp(last_timestamp: str, now: datetime | None = None) -> TimestampAllocation:
    """Allocate the next migration timestamp.

    Pure: the caller persists new_last_timestamp.

    Args:
        last_timestamp: The last allocated timestamp, or "" if none yet.
        now: Clock override for tests. Defaults to the current UTC time.

    Returns:
        TimestampAllocation where timestamp == new_last_timestamp.
    """
    current = format_timestamp(now or datetime.now(timezone.utc))

    if not last_timestamp.isdigit() or int(current) > int(last_timestamp):
        return TimestampAllocation(current, current)

    bumped = str(int(last_timestamp) + 1)
    return TimestampAllocation(bumped, bumped)
