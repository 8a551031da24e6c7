from collections import OrderedDict
from typing import Callable, Optional

from loguru import logger

from ...domain.errors import ClassifiedError
from ...domain.events import Notification, NotificationLevel
from ...domain.models import Clock, utc_now
from ...ports.notifications import NotificationSink
from ..event_bus import EventBus


class Notifier:
    """The single channel components report user-facing outcomes through.

    Notifications with a ``key`` that was already shown are dropped, so a fact
    folded twice (event + poll) never produces two toasts.
    """

    def __init__(
        self,
        bus: EventBus,
        clock: Clock = utc_now,
        dedupe_capacity: int = 256,
    ):
        self.bus = bus
        self._clock = clock
        self._seen_keys: "OrderedDict[str, None]" = OrderedDict()
        self._dedupe_capacity = dedupe_capacity

    def attach_sink(self, sink: NotificationSink) -> Callable[[], None]:
        return self.bus.subscribe(Notification, sink.show)

    def notify(
        self,
        level: NotificationLevel,
        message: str,
        key: Optional[str] = None,
        error: Optional[ClassifiedError] = None,
        identity: Optional[str] = None,
    ) -> bool:
        """Publish a notification; returns False when suppressed as a duplicate."""
        if key is not None:
            if key in self._seen_keys:
                logger.debug(f"NOTIFY | duplicate suppressed | key={key}")
                return False
            self._seen_keys[key] = None
            while len(self._seen_keys) > self._dedupe_capacity:
                self._seen_keys.popitem(last=False)

        self.bus.publish(
            Notification(
                level=level,
                message=message,
                timestamp=self._clock(),
                key=key,
                error=error,
                identity=identity,
            )
        )
        return True

    def report_error(
        self,
        error: ClassifiedError,
        context: str,
        key: Optional[str] = None,
        identity: Optional[str] = None,
    ) -> bool:
        logger.error(f"{context} | kind={error.kind.value} | {error.detail or error.user_message}")
        return self.notify(
            NotificationLevel.ERROR,
            error.user_message,
            key=key,
            error=error,
            identity=identity,
        )
