import math
import time
from datetime import datetime, timezone
from typing import Callable

# Returns the current time as epoch milliseconds
Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def seconds_until(epoch_ms: int, now: int) -> int:
    return math.ceil((epoch_ms - now) / 1000)


def utc_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def utc_date(epoch_ms: int) -> str:
    """YYYY-MM-DD for the given instant."""
    return utc_datetime(epoch_ms).strftime("%Y-%m-%d")
