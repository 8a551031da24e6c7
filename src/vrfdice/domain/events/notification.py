from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class NotificationLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    """User-facing message; ``key`` collapses duplicates of the same fact."""

    level: NotificationLevel
    message: str
    timestamp: datetime
    key: Optional[str] = None
    error: Optional["ClassifiedError"] = None
    identity: Optional[str] = None


@dataclass
class SessionChanged:
    previous: "GameSession"
    current: "GameSession"
    source: "PatchSource"
