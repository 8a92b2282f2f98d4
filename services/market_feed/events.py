# Per-instance publish/subscribe registry for feed events
import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set, Union

from core.logging import get_error_logger_safe
from core.schemas.events import FeedEventName

Handler = Callable[[Any], Any]


class FeedEventEmitter:
    """
    Callback registry owned by a single feed instance.

    Handlers may be plain callables or coroutine functions. A handler that
    raises is logged and skipped; it never breaks the feed or other handlers.
    Coroutine handlers run as tasks on the running loop.
    """

    def __init__(self, name: str = "feed"):
        self.name = name
        self._handlers: Dict[FeedEventName, List[Handler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()
        self.error_logger = get_error_logger_safe("feed_events")

    @staticmethod
    def _event(event: Union[FeedEventName, str]) -> FeedEventName:
        return event if isinstance(event, FeedEventName) else FeedEventName(event)

    def on(self, event: Union[FeedEventName, str], handler: Handler) -> Callable[[], None]:
        """Register handler; returns a callable that unregisters it."""
        name = self._event(event)
        self._handlers[name].append(handler)
        return lambda: self.off(name, handler)

    def off(self, event: Union[FeedEventName, str], handler: Handler) -> None:
        handlers = self._handlers.get(self._event(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: Union[FeedEventName, str]) -> int:
        return len(self._handlers.get(self._event(event), []))

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def emit(self, event: Union[FeedEventName, str], payload: Any) -> None:
        name = self._event(event)
        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception as e:
                self.error_logger.error(
                    "Feed event handler failed",
                    emitter=self.name, feed_event=name.value, error=e, exc_info=True,
                )

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.error_logger.error(
                "Async feed event handler failed",
                emitter=self.name, error=error,
            )

    async def drain(self) -> None:
        """Wait for in-flight coroutine handlers."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
