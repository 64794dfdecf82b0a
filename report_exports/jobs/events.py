"""
Queue Event Bus

Small publish/subscribe hub the job queue uses to announce lifecycle events
(jobAdded, jobStarted, jobCompleted, jobFailed, jobRetry, jobCancelled, jobTimeout).

Subscribers are called in registration order. Plain callables run inline;
coroutine functions are scheduled on the running loop. A failing subscriber is
logged and never interrupts the queue.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set, Union

from report_exports.jobs.job_types import JobEventType

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class QueueEventBus:
    """Publish/subscribe registry keyed by ``JobEventType``."""

    def __init__(self):
        self._subscribers: Dict[JobEventType, List[Handler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()
        self._total_published = 0

    def subscribe(self, event_type: Union[JobEventType, str], handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``. Returns a function that removes it."""
        event_type = JobEventType(event_type)
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)

        def unsubscribe():
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: Union[JobEventType, str], handler: Handler) -> None:
        event_type = JobEventType(event_type)
        if handler in self._subscribers.get(event_type, []):
            self._subscribers[event_type].remove(handler)

    def publish(self, event_type: JobEventType, *payload: Any) -> None:
        self._total_published += 1
        for handler in list(self._subscribers.get(event_type, [])):
            try:
                result = handler(*payload)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.error(f"Event handler for {event_type.value} failed: {e}")

    def _handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async event handler failed: {task.exception()}")

    async def wait_idle(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_published": self._total_published,
            "subscriber_count": sum(len(v) for v in self._subscribers.values()),
            "event_types": [e.value for e, handlers in self._subscribers.items() if handlers],
        }
