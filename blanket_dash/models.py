"""
Data models for the blanket dashboard.

Pydantic models for tasks, task types, workers, filters and log events,
as published by the backend REST API. Field aliases match the wire
format (camelCase); Python attributes are snake_case.
"""

from enum import Enum
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class TaskState(str, Enum):
    """Task lifecycle states reported by the backend."""
    WAIT = "WAIT"
    START = "START"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"
    STOPPED = "STOPPED"


class StreamState(str, Enum):
    """Lifecycle of a log tail connection."""
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# States in which a task has not finished yet
INCOMPLETE_STATES = frozenset({"WAIT", "START", "RUNNING"})

# States in which a task has not produced any results yet
NO_RESULT_STATES = frozenset({"WAIT", "START"})

# Severity label per state, used for colouring
DISPLAY_CLASSES = {
    "WAIT": "default",
    "START": "primary",
    "RUNNING": "warning",
    "ERROR": "danger",
    "SUCCESS": "success",
    "TIMEOUT": "danger",
    "STOPPED": "danger",
}

# Fixed pattern for the free-text filter dates
FILTER_DATE_PATTERN = "%Y-%m-%d"


def _seconds_to_ms(data: Dict[str, Any], fields: List[str]) -> Dict[str, Any]:
    """Copy a raw record, converting timestamp fields from seconds to milliseconds."""
    data = dict(data)
    for name in fields:
        value = data.get(name)
        if value is not None:
            data[name] = int(value * 1000)
    return data


def env_features(env: Dict[str, Any]) -> List[str]:
    """Sorted, deduplicated "name=value" strings for an environment mapping."""
    return sorted({f"{name}={value}" for name, value in (env or {}).items()})


class Task(BaseModel):
    """
    A task as displayed by the dashboard.

    Built fresh from every poll response; derived fields are properties
    of `state` and the timestamps and are never stored.
    """

    model_config = ConfigDict(populate_by_name=True)

    TIMESTAMP_FIELDS: ClassVar[List[str]] = ["createdTs", "startedTs", "lastUpdatedTs"]

    id: str = Field(..., description="Opaque task identifier")
    type: str = Field(default="", description="Name of the TaskType")
    state: str = Field(default=TaskState.WAIT.value, description="See TaskState")

    # Timestamps, in milliseconds once normalized
    created_ts: Optional[int] = Field(default=None, alias="createdTs")
    started_ts: Optional[int] = Field(default=None, alias="startedTs")
    last_updated_ts: Optional[int] = Field(default=None, alias="lastUpdatedTs")

    environment: Dict[str, Any] = Field(default_factory=dict, description="Launch-time parameters")
    default_env: Dict[str, Any] = Field(default_factory=dict, alias="defaultEnv")

    # Execution details
    pid: int = 0
    worker_id: str = Field(default="", alias="workerId")
    progress: int = 0
    result_dir: str = Field(default="", alias="resultDir")
    timeout: int = 0
    tags: List[str] = Field(default_factory=list)

    # Set by TaskStore after the feature corpus is built
    best_features: List[str] = Field(default_factory=list, alias="bestFeatures")

    @field_validator("state", mode="before")
    @classmethod
    def coerce_state(cls, v: Any) -> Any:
        """Accept TaskState members as well as raw strings."""
        if isinstance(v, TaskState):
            return v.value
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def none_tags(cls, v: Any) -> Any:
        return v if v is not None else []

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Task":
        """Normalize a raw backend record (timestamps in seconds)."""
        return cls.model_validate(_seconds_to_ms(record, cls.TIMESTAMP_FIELDS))

    @computed_field
    @property
    def is_complete(self) -> bool:
        return self.state not in INCOMPLETE_STATES

    @computed_field
    @property
    def has_results(self) -> bool:
        return self.state not in NO_RESULT_STATES

    @computed_field
    @property
    def display_class(self) -> str:
        return DISPLAY_CLASSES.get(self.state, "default")

    @computed_field
    @property
    def all_features(self) -> List[str]:
        return env_features(self.default_env)

    @property
    def stop_command(self) -> str:
        """Label for the action that removes this task from the running set."""
        return "Delete" if self.is_complete else "Stop"

    def time_running(self, now_ms: Optional[int] = None) -> Optional[float]:
        """
        How long the task has been running, in seconds.

        Args:
            now_ms: Current time in milliseconds (defaults to wall clock)

        Returns:
            Seconds between start and last update for complete tasks,
            between start and now otherwise; None if never started
        """
        if not self.started_ts:
            return None
        if self.is_complete:
            return ((self.last_updated_ts or self.started_ts) - self.started_ts) / 1000
        if now_ms is None:
            now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
        return (now_ms - self.started_ts) / 1000


class EnvironmentParam(BaseModel):
    """A launch-time parameter accepted by a task type."""

    name: str
    description: str = ""


class TaskTypeEnvironment(BaseModel):
    required: List[EnvironmentParam] = Field(default_factory=list)
    optional: List[EnvironmentParam] = Field(default_factory=list)

    @field_validator("required", "optional", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v if v is not None else []


class LaunchParam(BaseModel):
    """One row of the new-task form for a task type."""

    name: str
    value: str = ""
    description: str = ""
    required: bool = False


class TaskType(BaseModel):
    """
    A kind of task the backend knows how to run.

    `environment` describes which parameters a new task of this type accepts.
    """

    model_config = ConfigDict(populate_by_name=True)

    TIMESTAMP_FIELDS: ClassVar[List[str]] = ["loadedTs"]

    name: str = Field(..., description="Primary key")
    loaded_ts: Optional[int] = Field(default=None, alias="loadedTs")
    environment: TaskTypeEnvironment = Field(default_factory=TaskTypeEnvironment)

    @field_validator("environment", mode="before")
    @classmethod
    def none_environment(cls, v: Any) -> Any:
        return v if v is not None else {}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TaskType":
        """Normalize a raw backend record (timestamps in seconds)."""
        return cls.model_validate(_seconds_to_ms(record, cls.TIMESTAMP_FIELDS))

    def new_task_form(self) -> List[LaunchParam]:
        """Form rows for launching a task of this type, required first."""
        rows = [
            LaunchParam(name=p.name, description=p.description, required=True)
            for p in self.environment.required
        ]
        rows.extend(
            LaunchParam(name=p.name, description=p.description, required=False)
            for p in self.environment.optional
        )
        return rows

    def build_environment(self, values: Dict[str, str]) -> Dict[str, str]:
        """
        Build the environment map for a new task of this type.

        Extra parameters not declared by the type are passed through.

        Args:
            values: Parameter values keyed by name

        Returns:
            {name: value} map to send with the create request

        Raises:
            ValueError: If a required parameter is missing or empty
        """
        missing = [p.name for p in self.environment.required if not values.get(p.name)]
        if missing:
            raise ValueError(
                f"Missing required parameters for task type '{self.name}': {', '.join(missing)}"
            )
        return {name: value for name, value in values.items() if name}


class Worker(BaseModel):
    """A worker process registered with the backend."""

    model_config = ConfigDict(populate_by_name=True)

    TIMESTAMP_FIELDS: ClassVar[List[str]] = ["startedTs"]

    pid: int = Field(..., description="Primary key")
    id: str = ""
    started_ts: Optional[int] = Field(default=None, alias="startedTs")
    check_interval: float = Field(default=0.0, alias="checkInterval", description="Seconds")
    tags: List[str] = Field(default_factory=list)
    logfile: str = ""
    daemon: bool = False
    stopped: bool = False

    @field_validator("tags", mode="before")
    @classmethod
    def none_tags(cls, v: Any) -> Any:
        return v if v is not None else []

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Worker":
        """Normalize a raw backend record (timestamps in seconds)."""
        return cls.model_validate(_seconds_to_ms(record, cls.TIMESTAMP_FIELDS))


class FilterConfig(BaseModel):
    """
    User-defined task filter.

    Persisted as JSON under the camelCase field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    tags: str = Field(default="", description="Comma-separated tags")
    task_types: List[str] = Field(default_factory=list, alias="taskTypes")
    states: List[str] = Field(default_factory=list)
    start_date: str = Field(default="", alias="startDate")
    end_date: str = Field(default="", alias="endDate")

    @field_validator("task_types", "states", mode="before")
    @classmethod
    def dedupe(cls, v: Any) -> Any:
        """Sets are stored as sorted lists."""
        if v is None:
            return []
        if isinstance(v, (set, frozenset, list, tuple)):
            return sorted({str(item.value if isinstance(item, Enum) else item) for item in v})
        return v

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @staticmethod
    def parse_date(value: str) -> Optional[datetime]:
        """Parse a filter date against FILTER_DATE_PATTERN (UTC); None if blank or invalid."""
        value = (value or "").strip()
        if not value:
            return None
        try:
            return datetime.strptime(value, FILTER_DATE_PATTERN).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

    def tag_list(self) -> List[str]:
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    def to_query_params(self) -> Dict[str, str]:
        """
        Translate the filter into backend task search parameters.

        End dates are inclusive: `createdBefore` is the start of the
        following day. Timestamps are unix seconds.
        """
        params: Dict[str, str] = {}

        tags = self.tag_list()
        if tags:
            params["requiredTags"] = ",".join(tags)
        if self.task_types:
            params["types"] = ",".join(self.task_types)
        if self.states:
            params["states"] = ",".join(self.states)

        start = self.parse_date(self.start_date)
        if start is not None:
            params["createdAfter"] = str(int(start.timestamp()))
        end = self.parse_date(self.end_date)
        if end is not None:
            params["createdBefore"] = str(int((end + timedelta(days=1)).timestamp()))

        return params


class LogEvent(BaseModel):
    """One server-sent event from a task's log stream."""

    id: Optional[str] = None
    event: str = "message"
    data: str = ""
