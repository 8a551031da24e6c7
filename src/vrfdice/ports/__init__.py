from .ledger import ContractCall, EventHandler, LedgerPort, Subscription
from .notifications import NotificationSink

__all__ = [
    "ContractCall",
    "EventHandler",
    "LedgerPort",
    "Subscription",
    "NotificationSink",
]
