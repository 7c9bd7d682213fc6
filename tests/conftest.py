"""Test fixtures for blanket-dash tests."""

import json
from typing import Any, Callable, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from blanket_dash.client import BlanketClient
from blanket_dash.models import LogEvent
from blanket_dash.settings import LocalStore


class FakeTimer:
    """Timer handle returned by FakeScheduler."""

    def __init__(self, due: float, delay: float, callback: Callable[[], Any]):
        self.due = due
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Scheduler driven by a manual clock."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> List[Any]:
        """Move the clock forward, firing due timers in order; returns callback results."""
        self.now += seconds
        results = []
        for timer in sorted(self.pending, key=lambda t: t.due):
            if timer.due <= self.now:
                timer.fired = True
                results.append(timer.callback())
        return results


class FakeEventSource:
    """
    Scripted push stream.

    Items are ("open", None), ("message", LogEvent) or ("error", None).
    Records what the consumer accepted before closing.
    """

    def __init__(self, script: List[Tuple[str, Optional[LogEvent]]]):
        self.script = script
        self.closed = False
        self.yielded = 0

    def close(self) -> None:
        self.closed = True

    async def events(self):
        for item in self.script:
            if self.closed:
                return
            self.yielded += 1
            yield item


def log_event(n: int) -> LogEvent:
    return LogEvent(id=str(n), data=f"line {n}")


def task_record(task_id: str = "t1", state: str = "RUNNING", **overrides) -> dict:
    """Raw task record as the backend sends it (timestamps in seconds)."""
    record = {
        "id": task_id,
        "type": "build",
        "state": state,
        "createdTs": 1500000000,
        "startedTs": 1500000010,
        "lastUpdatedTs": 1500000020,
        "defaultEnv": {"BRANCH": "main", "DEBUG": "false"},
        "tags": ["bash"],
    }
    record.update(overrides)
    return record


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def local_store(tmp_path):
    return LocalStore(tmp_path / "local_store.json")


@pytest_asyncio.fixture
async def make_client():
    """
    Build a BlanketClient over an httpx.MockTransport.

    The handler receives each httpx.Request; requests are recorded on
    `client.requests`. Every client built is closed at teardown.
    """
    clients = []

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> BlanketClient:
        requests: List[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        client = BlanketClient("http://backend.test", transport=httpx.MockTransport(_record))
        client.requests = requests
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()


def json_response(data: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(data), headers={"Content-Type": "application/json"})


@pytest.fixture
def make_task_record():
    return task_record


@pytest.fixture
def make_log_event():
    return log_event


@pytest.fixture
def respond_json():
    return json_response


@pytest.fixture
def make_event_source():
    return FakeEventSource
