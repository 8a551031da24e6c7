from .log_sink import LogNotificationSink

__all__ = ["LogNotificationSink"]
