"""
Live tail of a task's log.

One LogTail per observed task. It consumes lifecycle events from a push
stream (see client.HttpEventSource), keeps a bounded buffer of recent log
lines and shuts the stream down once the task is no longer running.

States:
    CONNECTING -> OPEN     stream reports a (re)connect
    OPEN -> CONNECTING     stream dropped, primitive is reconnecting
    any -> CLOSED          close() (owner teardown, or task found terminal)
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Tuple

from blanket_dash.models import LogEvent, StreamState, Task, TaskState


logger = logging.getLogger(__name__)


DEFAULT_MAX_EVENTS = 100
DEFAULT_TRIM_SIZE = 10


class EventSource(Protocol):
    """Push-stream primitive; reconnection is its own business."""

    def events(self) -> AsyncIterator[Tuple[str, Optional[LogEvent]]]: ...

    def close(self) -> None: ...


class LogTail:
    """
    Bounded buffer of a task's most recent log events.

    When the buffer grows past `max_events`, the oldest `trim_size`
    events are dropped in one go.
    """

    def __init__(
        self,
        task_id: str,
        fetch_task: Callable[[str], Awaitable[Optional[Task]]],
        source: EventSource,
        max_events: int = DEFAULT_MAX_EVENTS,
        trim_size: int = DEFAULT_TRIM_SIZE,
        on_event: Optional[Callable[[LogEvent], None]] = None,
    ):
        """
        Initialize log tail.

        Args:
            task_id: Task being observed
            fetch_task: Returns the task's current snapshot (e.g. TaskStore.refresh_task)
            source: Push stream of the task's log
            max_events: Buffer cap
            trim_size: Events evicted when the cap is exceeded
            on_event: Called with each accepted event
        """
        self.task_id = task_id
        self.fetch_task = fetch_task
        self.source = source
        self.max_events = max_events
        self.trim_size = trim_size
        self.on_event = on_event

        self.state = StreamState.CONNECTING
        self.task: Optional[Task] = None
        self._events: List[LogEvent] = []
        self._runner: Optional[asyncio.Task] = None

    @property
    def events(self) -> List[LogEvent]:
        return list(self._events)

    @property
    def closed(self) -> bool:
        return self.state is StreamState.CLOSED

    async def refresh_task(self) -> Optional[Task]:
        task = await self.fetch_task(self.task_id)
        if task is not None:
            self.task = task
        return task

    async def start(self) -> None:
        """Take an initial task snapshot before any event arrives."""
        logger.debug(f"Starting to stream log events for task {self.task_id}")
        await self.refresh_task()

    def on_message(self, event: LogEvent) -> bool:
        """
        Buffer a log event.

        Returns:
            False if the tail is closed and the event was dropped
        """
        if self.closed:
            return False

        self._events.append(event)
        if len(self._events) > self.max_events:
            del self._events[:self.trim_size]

        if self.on_event is not None:
            self.on_event(event)
        return True

    async def on_open(self) -> None:
        """
        Handle a (re)connect: re-read the task and close if it has finished.

        A task that is not running will not produce more output, so the
        stream would only keep reconnecting.
        """
        if self.closed:
            return

        self.state = StreamState.OPEN
        task = await self.refresh_task()
        if task is not None and task.state != TaskState.RUNNING.value:
            logger.info(f"Task {self.task_id} is no longer running ({task.state}), closing log stream")
            self.close()

    def on_error(self) -> None:
        if not self.closed:
            self.state = StreamState.CONNECTING

    def close(self) -> None:
        """Close the stream. Safe to call more than once, from any task."""
        if self.closed:
            return

        logger.debug(f"Closing log stream for task {self.task_id}")
        self.state = StreamState.CLOSED
        self.source.close()

        runner = self._runner
        if runner is not None and runner is not asyncio.current_task():
            runner.cancel()

    async def run(self) -> None:
        """
        Consume the stream until closed or cancelled.

        The stream is closed on every exit path.
        """
        self._runner = asyncio.current_task()
        events = self.source.events()

        try:
            await self.start()
            async for kind, payload in events:
                if kind == "open":
                    await self.on_open()
                elif kind == "message" and payload is not None:
                    self.on_message(payload)
                elif kind == "error":
                    self.on_error()

                if self.closed:
                    break
        finally:
            self._runner = None
            self.close()
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
