from abc import ABC, abstractmethod

from ..domain.events import Notification


class NotificationSink(ABC):
    """Where user-facing notifications end up (toasts, CLI lines, ...)."""

    @abstractmethod
    def show(self, notification: Notification) -> None:
        ...
