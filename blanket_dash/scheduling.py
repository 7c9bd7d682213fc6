"""
Timer primitives for the dashboard's event loop.

All deferred work (delayed re-syncs after a mutation, debounced filter
writes) goes through a Scheduler so that it can be driven by a fake
clock in tests.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Protocol


logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback once after `delay` seconds."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...


class AsyncioScheduler:
    """
    Scheduler backed by the running asyncio loop.

    Coroutine functions are wrapped in a task when their timer fires;
    exceptions from those tasks are logged rather than lost.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: set = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, self._fire, callback)

    def _fire(self, callback: Callable[[], Any]) -> None:
        result = callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Scheduled callback failed: {task.exception()}", exc_info=task.exception())


class Debouncer:
    """
    Coalesces bursts of calls into a single trailing call.

    Every call to `trigger()` restarts the window; when `delay` seconds
    pass without a new trigger, `action` runs once with the arguments of
    the last trigger.
    """

    def __init__(self, scheduler: Scheduler, delay: float, action: Callable[..., Any]):
        """
        Initialize debouncer.

        Args:
            scheduler: Timer source
            delay: Quiet period in seconds
            action: Callable run at the end of a burst
        """
        self.scheduler = scheduler
        self.delay = delay
        self.action = action

        self._handle: Optional[TimerHandle] = None
        self._args: tuple = ()
        self._kwargs: dict = {}

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self, *args, **kwargs) -> None:
        """Schedule `action`, superseding any call still inside the window."""
        if self._handle is not None:
            self._handle.cancel()
        self._args = args
        self._kwargs = kwargs
        self._handle = self.scheduler.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        """Drop the pending call, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> Any:
        """Run the pending call now instead of waiting for the window to close."""
        if self._handle is None:
            return None
        self._handle.cancel()
        return self._fire()

    def _fire(self) -> Any:
        self._handle = None
        args, kwargs = self._args, self._kwargs
        self._args, self._kwargs = (), {}
        return self.action(*args, **kwargs)
