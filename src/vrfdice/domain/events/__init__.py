from .base import LedgerEvent
from .game import RandomnessFulfilled, SessionCancelled, SessionCompleted, SessionStarted
from .token import Approval
from .notification import Notification, NotificationLevel, SessionChanged
from .transaction import TransactionSettled

__all__ = [
    "LedgerEvent",
    "SessionStarted",
    "SessionCompleted",
    "SessionCancelled",
    "RandomnessFulfilled",
    "Approval",
    "Notification",
    "NotificationLevel",
    "SessionChanged",
    "TransactionSettled",
]
