import asyncio
import inspect
from collections import defaultdict
from typing import Callable, Dict, List, Set, Type

from loguru import logger


class EventBus:
    """Synchronous pub/sub; coroutine handlers are scheduled as tracked tasks."""

    def __init__(self):
        self._handlers: Dict[Type, List[Callable]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type, handler: Callable) -> Callable[[], None]:
        """Subscribe handler to event type; returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: Type, handler: Callable) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event) -> None:
        """Dispatch to every handler registered for the exact event type."""
        event_type = type(event)
        for handler in list(self._handlers.get(event_type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as exc:
                logger.exception(f"EVENT_BUS | handler error | type={event_type.__name__} | {exc}")

    async def stop(self) -> None:
        """Cancel handler tasks still running."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"EVENT_BUS | async handler error | {exc}")
