"""
Dashboard session.

Wires the backend client, local storage, stores, filter and autorefresh
together from a ConfigManager, the way a single browser tab would.
"""

from pathlib import Path
from typing import Callable, Optional

from blanket_dash.client import BlanketClient
from blanket_dash.config import ConfigManager
from blanket_dash.filters import FilterStore
from blanket_dash.log_stream import LogTail
from blanket_dash.models import LogEvent
from blanket_dash.scheduling import AsyncioScheduler, Scheduler
from blanket_dash.settings import LocalStore
from blanket_dash.sync import AutoRefresher, TaskStore, WorkerStore


class Dashboard:
    """
    One dashboard session against one backend.

    Usage:
        async with create_dashboard() as dash:
            await dash.tasks.refresh_tasks()
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        client: Optional[BlanketClient] = None,
        local_store: Optional[LocalStore] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize dashboard session.

        Args:
            config_manager: Configuration (creates default if None)
            client: Backend client (built from settings if None)
            local_store: Preference storage (built from settings if None)
            scheduler: Timer source shared by all components
        """
        self.config_manager = config_manager or ConfigManager()
        settings = self.config_manager.settings

        self.client = client or BlanketClient(settings.base_url, timeout=settings.request_timeout)
        self.local_store = local_store or LocalStore(self.config_manager.local_store_path())
        self.scheduler = scheduler or AsyncioScheduler()

        self.filters = FilterStore(
            self.local_store,
            self.scheduler,
            delay=settings.filter_debounce_ms / 1000,
        )
        self.filters.load()

        self.tasks = TaskStore(
            self.client,
            self.scheduler,
            page_size=settings.page_size,
            mutation_delay=settings.task_mutation_delay_ms / 1000,
            filter_source=lambda: self.filters.filter,
        )
        self.workers = WorkerStore(self.client, self.scheduler)

        self.autorefresh = AutoRefresher(
            self.tasks,
            self.workers,
            self.local_store,
            interval=settings.refresh_interval_ms / 1000,
            filters=self.filters,
        )

    async def __aenter__(self) -> "Dashboard":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def open_log_tail(
        self,
        task_id: str,
        on_event: Optional[Callable[[LogEvent], None]] = None
    ) -> LogTail:
        """Create a log tail for a task; the caller runs and closes it."""
        settings = self.config_manager.settings
        return LogTail(
            task_id,
            self.tasks.refresh_task,
            self.client.task_log_source(task_id),
            max_events=settings.log_buffer_size,
            trim_size=settings.log_trim_size,
            on_event=on_event,
        )

    async def close(self) -> None:
        self.autorefresh.stop()
        self.filters.flush()
        await self.client.aclose()


def create_dashboard(config_file: Optional[Path] = None) -> Dashboard:
    """
    Create a configured dashboard session.

    Args:
        config_file: Path to configuration file

    Returns:
        Configured Dashboard
    """
    return Dashboard(config_manager=ConfigManager(config_file))
