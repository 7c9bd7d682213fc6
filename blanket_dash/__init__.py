"""
Blanket Dash - observe and control a blanket task backend.

Keeps local snapshots of tasks, task types and workers in sync with the
backend, tails task logs live, and points out what is unusual about each
task's configuration.

- sync        - polling stores and autorefresh
- log_stream  - bounded live log tail
- features    - distinctive-feature corpus
- filters     - persisted, debounced task filter
"""

__version__ = "0.4.0"

from blanket_dash.models import (
    Task,
    TaskState,
    TaskType,
    Worker,
    FilterConfig,
    LogEvent,
    StreamState,
)

from blanket_dash.client import BlanketClient, BackendError, HttpEventSource
from blanket_dash.config import ConfigManager, DashboardSettings, DEFAULT_CONFIG_FILE
from blanket_dash.features import DiffFeatures
from blanket_dash.filters import FilterStore
from blanket_dash.log_stream import LogTail
from blanket_dash.scheduling import AsyncioScheduler, Debouncer
from blanket_dash.settings import LocalStore
from blanket_dash.sync import TaskStore, WorkerStore, AutoRefresher
from blanket_dash.dashboard import Dashboard, create_dashboard

__all__ = [
    # Models
    "Task",
    "TaskState",
    "TaskType",
    "Worker",
    "FilterConfig",
    "LogEvent",
    "StreamState",
    # Backend
    "BlanketClient",
    "BackendError",
    "HttpEventSource",
    # Config
    "ConfigManager",
    "DashboardSettings",
    "DEFAULT_CONFIG_FILE",
    # Components
    "DiffFeatures",
    "FilterStore",
    "LogTail",
    "AsyncioScheduler",
    "Debouncer",
    "LocalStore",
    "TaskStore",
    "WorkerStore",
    "AutoRefresher",
    "Dashboard",
    "create_dashboard",
]
