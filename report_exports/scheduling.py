"""
Cron Trigger

Runs a callback on a cron schedule inside the running asyncio loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union
from zoneinfo import ZoneInfo

from croniter import croniter

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[Any, Awaitable[Any]]]


def resolve_timezone(name: str):
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class CronTrigger:
    """
    Invokes ``callback`` each time ``expression`` fires.

    Runs are sequential: the next fire time is computed after the callback
    returns, so a slow callback skips fire times rather than overlapping.
    Callback errors are logged and never stop the trigger.
    """

    def __init__(self, expression: str, callback: Callback, tz: str = "UTC"):
        if not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression: {expression}")
        self.expression = expression
        self.callback = callback
        self.tz = resolve_timezone(tz)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        base = (after or datetime.now(timezone.utc)).astimezone(self.tz)
        return croniter(self.expression, base).get_next(datetime)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Cron trigger started: '{self.expression}' (next run {self.next_run().isoformat()})")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        logger.info(f"Cron trigger stopped: '{self.expression}'")

    async def _run(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            delay = (self.next_run() - datetime.now(timezone.utc)).total_seconds()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 0))
                return
            except asyncio.TimeoutError:
                pass

            try:
                result = self.callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled callback failed: {e}")
