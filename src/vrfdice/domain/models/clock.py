from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default wall clock. Components take a Clock so tests can drive time."""
    return datetime.now(timezone.utc)
