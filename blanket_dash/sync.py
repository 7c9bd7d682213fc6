"""
Synchronization of local task and worker snapshots with the backend.

Stores poll the backend, normalize what they get back and publish plain
snapshots (`TaskStore.tasks`, `TaskStore.task_types`, `WorkerStore.workers`).
Mutations re-sync after a short delay to give the backend time to apply
them. AutoRefresher drives the periodic poll.

Everything runs on one asyncio loop. Overlapping refreshes are not
cancelled; whichever response is processed last wins.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from blanket_dash.client import BackendError, BlanketClient
from blanket_dash.features import DiffFeatures
from blanket_dash.models import FilterConfig, Task, TaskType, Worker, env_features
from blanket_dash.scheduling import AsyncioScheduler, Scheduler
from blanket_dash.settings import SHOULD_REFRESH_KEY, LocalStore


logger = logging.getLogger(__name__)


DEFAULT_PAGE_SIZE = 50

# Delays before re-syncing after a mutation (seconds)
TASK_MUTATION_DELAY = 1.0
WORKER_LAUNCH_EXTRA_DELAY = 1.0
WORKER_STOP_EXTRA_DELAY = 0.5

DEFAULT_REFRESH_INTERVAL = 2.0


def task_features(task: Task) -> List[str]:
    return env_features(task.default_env)


class TaskStore:
    """
    Snapshot of recent tasks and known task types.

    `refresh_tasks` rebuilds the feature corpus from the fetched page on
    every call, so best features always describe the current page.
    """

    def __init__(
        self,
        client: BlanketClient,
        scheduler: Optional[Scheduler] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        mutation_delay: float = TASK_MUTATION_DELAY,
        features: Optional[DiffFeatures] = None,
        filter_source: Optional[Callable[[], Optional[FilterConfig]]] = None,
    ):
        """
        Initialize task store.

        Args:
            client: Backend client
            scheduler: Timer source for delayed re-syncs
            page_size: Number of most recent tasks to fetch
            mutation_delay: Seconds to wait after a mutation before re-syncing
            features: Feature corpus (one per store)
            filter_source: Returns the filter applied when a refresh is
                not given one (e.g. the delayed re-sync after a mutation)
        """
        self.client = client
        self.scheduler = scheduler or AsyncioScheduler()
        self.page_size = page_size
        self.mutation_delay = mutation_delay
        self.features = features or DiffFeatures(task_features)
        self.filter_source = filter_source

        self.tasks: List[Task] = []
        self.task_types: List[TaskType] = []

    async def refresh_tasks(self, filters: Optional[FilterConfig] = None) -> List[Task]:
        """
        Fetch the most recent tasks and annotate their best features.

        Registration of the whole page happens before any best-of query.
        On failure the previous snapshot is kept.

        Args:
            filters: Filter translated into search parameters; defaults to
                the current filter from `filter_source`

        Returns:
            The published task snapshot
        """
        if filters is None and self.filter_source is not None:
            filters = self.filter_source()
        params = filters.to_query_params() if filters else None
        try:
            records = await self.client.list_tasks(
                limit=self.page_size, reverse_sort=True, params=params
            )
            tasks = [Task.from_record(record) for record in records]
        except (BackendError, ValidationError) as e:
            logger.warning(f"Could not refresh tasks: {e}")
            return self.tasks

        self.features.clear()
        feature_lists = [self.features.add_item(task) for task in tasks]
        for task, features in zip(tasks, feature_lists):
            task.best_features = self.features.get_best_of_features(features)

        self.tasks = tasks
        logger.debug(f"Found {len(tasks)} tasks")
        return tasks

    async def refresh_task_types(self) -> List[TaskType]:
        try:
            records = await self.client.list_task_types(limit=self.page_size)
            task_types = [TaskType.from_record(record) for record in records]
        except (BackendError, ValidationError) as e:
            logger.warning(f"Could not refresh task types: {e}")
            return self.task_types

        self.task_types = task_types
        logger.debug(f"Found {len(task_types)} task types")
        return task_types

    async def refresh_task(self, task_id: str) -> Optional[Task]:
        """Fetch one task's current snapshot; None if it can't be read."""
        try:
            return Task.from_record(await self.client.get_task(task_id))
        except (BackendError, ValidationError) as e:
            logger.warning(f"Could not refresh task {task_id}: {e}")
            return None

    def get_task_type(self, name: str) -> Optional[TaskType]:
        for task_type in self.task_types:
            if task_type.name == name:
                return task_type
        return None

    def _schedule_refresh(self) -> None:
        self.scheduler.call_later(self.mutation_delay, self.refresh_tasks)

    async def create_task(self, task_type: str, environment: Dict[str, str]) -> bool:
        """
        Launch a new task.

        Returns:
            True if the backend accepted it (a re-sync is scheduled)
        """
        logger.info(f"Launching new task of type '{task_type}'")
        try:
            await self.client.create_task(task_type, environment)
        except BackendError as e:
            logger.error(f"Problem launching task of type '{task_type}': {e}")
            return False

        logger.info(f"Launched task of type '{task_type}'")
        self._schedule_refresh()
        return True

    async def stop_task(self, task: Task) -> bool:
        logger.info(f"Stopping task {task.id}")
        try:
            await self.client.stop_task(task.id)
        except BackendError as e:
            logger.error(f"Problem stopping task {task.id}: {e}")
            return False

        logger.info(f"Stopped task {task.id}")
        self._schedule_refresh()
        return True

    async def delete_task(self, task: Task) -> bool:
        logger.info(f"Deleting task {task.id}")
        try:
            await self.client.delete_task(task.id)
        except BackendError as e:
            logger.error(f"Problem deleting task {task.id}: {e}")
            return False

        logger.info(f"Deleted task {task.id}")
        self._schedule_refresh()
        return True

    async def stop_or_delete(self, task: Task) -> bool:
        """Delete a complete task, stop a live one."""
        if task.is_complete:
            return await self.delete_task(task)
        return await self.stop_task(task)


class WorkerStore:
    """Snapshot of registered workers."""

    def __init__(self, client: BlanketClient, scheduler: Optional[Scheduler] = None):
        self.client = client
        self.scheduler = scheduler or AsyncioScheduler()
        self.workers: List[Worker] = []

    async def refresh_workers(self) -> List[Worker]:
        try:
            records = await self.client.list_workers()
            workers = [Worker.from_record(record) for record in records]
        except (BackendError, ValidationError) as e:
            logger.warning(f"Could not refresh workers: {e}")
            return self.workers

        self.workers = workers
        logger.debug(f"Found {len(workers)} workers")
        return workers

    def _schedule_refresh(self, check_interval: float, extra_delay: float) -> float:
        delay = check_interval + extra_delay
        self.scheduler.call_later(delay, self.refresh_workers)
        return delay

    async def launch_worker(self, config: Dict[str, Any]) -> bool:
        """
        Launch a worker process.

        The re-sync waits one check interval plus a second so the new
        worker has registered itself.
        """
        logger.info(f"Launching worker {config}")
        try:
            await self.client.launch_worker(config)
        except BackendError as e:
            logger.error(f"Problem launching worker: {e}")
            return False

        check_interval = float(config.get("checkInterval") or 0)
        self._schedule_refresh(check_interval, WORKER_LAUNCH_EXTRA_DELAY)
        return True

    async def stop_worker(self, worker: Worker) -> bool:
        logger.info(f"Stopping worker {worker.pid}")
        try:
            await self.client.stop_worker(worker.pid)
        except BackendError as e:
            logger.error(f"Problem stopping worker {worker.pid}: {e}")
            return False

        self._schedule_refresh(worker.check_interval, WORKER_STOP_EXTRA_DELAY)
        return True


class AutoRefresher:
    """
    Periodic full refresh, switchable on and off by the user.

    The toggle is persisted in local storage. The timer keeps ticking
    while the toggle is off so that switching it back on takes effect on
    the next tick.
    """

    def __init__(
        self,
        task_store: TaskStore,
        worker_store: WorkerStore,
        local_store: LocalStore,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        filters: Optional[Any] = None,
    ):
        """
        Initialize autorefresher.

        Args:
            task_store: Tasks and task types to refresh
            worker_store: Workers to refresh
            local_store: Where the toggle is persisted
            interval: Seconds between ticks
            filters: Optional object with a `filter` attribute (FilterStore)
        """
        self.task_store = task_store
        self.worker_store = worker_store
        self.local_store = local_store
        self.interval = interval
        self.filters = filters

        self._should_refresh = local_store.get_bool(SHOULD_REFRESH_KEY, default=False)
        self._running = False
        self._inflight: set = set()

    @property
    def should_refresh(self) -> bool:
        return self._should_refresh

    def set_auto_refresh(self, value: bool) -> None:
        self._should_refresh = bool(value)
        self.local_store.set_item(SHOULD_REFRESH_KEY, self._should_refresh)
        logger.info(f"Turning {'on' if self._should_refresh else 'off'} autorefresh")

    def refresh_data(self) -> List[asyncio.Future]:
        """Start one full refresh cycle without waiting for it."""
        current_filter = self.filters.filter if self.filters is not None else None
        futures = [
            asyncio.ensure_future(self.task_store.refresh_tasks(current_filter)),
            asyncio.ensure_future(self.task_store.refresh_task_types()),
            asyncio.ensure_future(self.worker_store.refresh_workers()),
        ]
        for future in futures:
            self._inflight.add(future)
            future.add_done_callback(self._refresh_done)
        return futures

    def _refresh_done(self, future: asyncio.Future) -> None:
        self._inflight.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Refresh failed: {future.exception()}", exc_info=future.exception())

    def tick(self) -> bool:
        """One timer tick; returns True if a refresh cycle was started."""
        if not self._should_refresh:
            logger.debug("Skipping autorefresh")
            return False
        self.refresh_data()
        return True

    async def wait_idle(self) -> None:
        """Wait for in-flight refreshes to settle."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def run(self, cycles: Optional[int] = None) -> None:
        """
        Refresh once, then tick every `interval` seconds.

        Args:
            cycles: Number of ticks to run (None = until stop())
        """
        self._running = True
        loop = asyncio.get_running_loop()

        self.refresh_data()
        next_tick = loop.time() + self.interval
        ticks = 0

        try:
            while self._running and (cycles is None or ticks < cycles):
                await asyncio.sleep(max(next_tick - loop.time(), 0))
                next_tick += self.interval
                ticks += 1
                if self._running:
                    self.tick()
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
