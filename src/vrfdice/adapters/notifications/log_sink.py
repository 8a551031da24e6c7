from loguru import logger

from ...domain.events import Notification, NotificationLevel
from ...ports.notifications import NotificationSink


_LEVELS = {
    NotificationLevel.INFO: "INFO",
    NotificationLevel.SUCCESS: "SUCCESS",
    NotificationLevel.WARNING: "WARNING",
    NotificationLevel.ERROR: "ERROR",
}


class LogNotificationSink(NotificationSink):
    """Shows user notifications as log lines (the CLI front-end)."""

    def show(self, notification: Notification) -> None:
        logger.log(_LEVELS[notification.level], f"NOTICE | {notification.message}")
