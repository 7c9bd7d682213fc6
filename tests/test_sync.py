"""Tests for blanket_dash.sync module."""

import asyncio

import httpx
import pytest

from blanket_dash.models import FilterConfig, Task, Worker
from blanket_dash.settings import SHOULD_REFRESH_KEY
from blanket_dash.sync import AutoRefresher, TaskStore, WorkerStore


class FakeBackend:
    """Routes MockTransport requests to in-memory records."""

    def __init__(self, task_record, json_response):
        self.json_response = json_response
        self.tasks = [
            task_record("t1", defaultEnv={"BRANCH": "main", "DEBUG": "false"}),
            task_record("t2", state="SUCCESS", defaultEnv={"BRANCH": "dev", "DEBUG": "false"}),
        ]
        self.task_types = [{"name": "build", "loadedTs": 1500000000}]
        self.workers = [{"id": "w", "pid": 4242, "checkInterval": 2.0, "startedTs": 1500000000}]
        self.fail = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(500, text="backend down")

        path = request.url.path
        if request.method == "GET" and path == "/task/":
            return self.json_response(self.tasks)
        if request.method == "GET" and path.startswith("/task/"):
            task_id = path.split("/")[2]
            for record in self.tasks:
                if record["id"] == task_id:
                    return self.json_response(record)
            return httpx.Response(404)
        if request.method == "GET" and path == "/task_type/":
            return self.json_response(self.task_types)
        if request.method == "GET" and path == "/worker/":
            return self.json_response(self.workers)
        return self.json_response({})


@pytest.fixture
def backend(make_task_record, respond_json):
    return FakeBackend(make_task_record, respond_json)


@pytest.fixture
def client(make_client, backend):
    return make_client(backend)


@pytest.fixture
def task_store(client, scheduler):
    return TaskStore(client, scheduler=scheduler)


@pytest.fixture
def worker_store(client, scheduler):
    return WorkerStore(client, scheduler=scheduler)


def requests_to(client, method, path):
    return [r for r in client.requests if r.method == method and r.url.path == path]


class TestRefreshTasks:
    """Tests for TaskStore.refresh_tasks."""

    @pytest.mark.asyncio
    async def test_tasks_normalized(self, task_store):
        """Test records become Task objects with millisecond timestamps."""
        tasks = await task_store.refresh_tasks()

        assert [t.id for t in tasks] == ["t1", "t2"]
        assert all(isinstance(t, Task) for t in tasks)
        assert tasks[0].created_ts == 1500000000000
        assert task_store.tasks is tasks

    @pytest.mark.asyncio
    async def test_best_features(self, task_store):
        """Test shared parameters are left out of best features."""
        tasks = await task_store.refresh_tasks()
        assert tasks[0].best_features == ["BRANCH=main"]
        assert tasks[1].best_features == ["BRANCH=dev"]

    @pytest.mark.asyncio
    async def test_repeated_refresh_is_stable(self, task_store):
        """Test polling the same page gives the same best features."""
        await task_store.refresh_tasks()
        tasks = await task_store.refresh_tasks()
        assert tasks[0].best_features == ["BRANCH=main"]
        assert task_store.features.item_count == 2

    @pytest.mark.asyncio
    async def test_failure_keeps_snapshot(self, task_store, backend):
        """Test a failed refresh leaves the previous tasks in place."""
        before = await task_store.refresh_tasks()
        backend.fail = True

        after = await task_store.refresh_tasks()

        assert after is before
        assert task_store.tasks is before

    @pytest.mark.asyncio
    async def test_filters_sent(self, task_store, client):
        """Test a filter becomes search parameters."""
        await task_store.refresh_tasks(FilterConfig(states=["RUNNING"], tags="gpu"))
        params = client.requests[0].url.params
        assert params["states"] == "RUNNING"
        assert params["requiredTags"] == "gpu"
        assert params["limit"] == "50"
        assert params["reverseSort"] == "true"


class TestRefreshOthers:
    """Tests for task type, single task and worker refreshes."""

    @pytest.mark.asyncio
    async def test_task_types(self, task_store):
        """Test task types are fetched and looked up by name."""
        await task_store.refresh_task_types()
        assert task_store.get_task_type("build").loaded_ts == 1500000000000
        assert task_store.get_task_type("missing") is None

    @pytest.mark.asyncio
    async def test_refresh_task(self, task_store):
        """Test one task can be read, missing ones give None."""
        assert (await task_store.refresh_task("t2")).state == "SUCCESS"
        assert await task_store.refresh_task("nope") is None

    @pytest.mark.asyncio
    async def test_workers(self, worker_store, backend):
        """Test workers are normalized and kept on failure."""
        workers = await worker_store.refresh_workers()
        assert workers[0].pid == 4242
        assert workers[0].started_ts == 1500000000000

        backend.fail = True
        assert await worker_store.refresh_workers() is workers


class TestTaskMutations:
    """Tests for TaskStore mutations and their delayed re-sync."""

    @pytest.mark.asyncio
    async def test_create_task_schedules_one_refresh(self, task_store, client, scheduler):
        """Test a refresh runs once, one second after creation, and not before."""
        assert await task_store.create_task("build", {"BRANCH": "main"}) is True

        assert requests_to(client, "GET", "/task/") == []
        assert [t.delay for t in scheduler.pending] == [1.0]

        assert scheduler.advance(0.9) == []
        results = scheduler.advance(0.2)
        assert len(results) == 1
        await results[0]

        assert len(requests_to(client, "GET", "/task/")) == 1
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_failed_mutation_schedules_nothing(self, task_store, backend, scheduler):
        """Test a rejected mutation does not re-sync."""
        backend.fail = True
        assert await task_store.create_task("build", {}) is False
        assert await task_store.stop_task(Task(id="t1", state="RUNNING")) is False
        assert scheduler.timers == []

    @pytest.mark.asyncio
    async def test_stop_or_delete(self, task_store, client, scheduler):
        """Test live tasks are stopped and complete ones deleted."""
        await task_store.stop_or_delete(Task(id="t1", state="RUNNING"))
        await task_store.stop_or_delete(Task(id="t2", state="SUCCESS"))

        assert len(requests_to(client, "PUT", "/task/t1/state")) == 1
        assert len(requests_to(client, "DELETE", "/task/t2")) == 1
        assert [t.delay for t in scheduler.pending] == [1.0, 1.0]

        for coro in scheduler.advance(1.0):
            await coro

    @pytest.mark.asyncio
    async def test_resync_keeps_active_filter(self, client, scheduler, worker_store, local_store):
        """Test the re-sync after a mutation applies the current filter."""
        class Holder:
            filter = FilterConfig(states=["ERROR"])

        holder = Holder()
        store = TaskStore(client, scheduler=scheduler, filter_source=lambda: holder.filter)
        refresher = AutoRefresher(store, worker_store, local_store, filters=holder)
        refresher.set_auto_refresh(True)
        refresher.tick()
        await refresher.wait_idle()

        assert await store.create_task("build", {"BRANCH": "main"}) is True
        for coro in scheduler.advance(1.0):
            await coro

        task_requests = requests_to(client, "GET", "/task/")
        assert len(task_requests) == 2
        assert all(r.url.params.get("states") == "ERROR" for r in task_requests)

    @pytest.mark.asyncio
    async def test_explicit_filter_overrides_source(self, client, scheduler):
        """Test an explicit filter wins over the filter source."""
        store = TaskStore(
            client, scheduler=scheduler,
            filter_source=lambda: FilterConfig(states=["ERROR"]),
        )
        await store.refresh_tasks(FilterConfig())
        assert "states" not in client.requests[0].url.params


class TestWorkerMutations:
    """Tests for WorkerStore mutations."""

    @pytest.mark.asyncio
    async def test_launch_waits_check_interval_plus_one(self, worker_store, scheduler):
        """Test launch re-syncs after checkInterval + 1s."""
        assert await worker_store.launch_worker({"checkInterval": 3}) is True
        assert [t.delay for t in scheduler.pending] == [4.0]

    @pytest.mark.asyncio
    async def test_launch_without_check_interval(self, worker_store, scheduler):
        """Test a config without checkInterval waits the extra second only."""
        await worker_store.launch_worker({})
        assert [t.delay for t in scheduler.pending] == [1.0]

    @pytest.mark.asyncio
    async def test_stop_waits_check_interval_plus_half(self, worker_store, client, scheduler):
        """Test stop re-syncs after checkInterval + 0.5s."""
        worker = Worker(pid=4242, check_interval=2.0)
        assert await worker_store.stop_worker(worker) is True

        assert len(requests_to(client, "PUT", "/worker/4242/shutdown")) == 1
        assert [t.delay for t in scheduler.pending] == [2.5]

        for coro in scheduler.advance(2.5):
            await coro
        assert len(requests_to(client, "GET", "/worker/")) == 1

    @pytest.mark.asyncio
    async def test_failed_launch(self, worker_store, backend, scheduler):
        """Test failures are reported and not re-synced."""
        backend.fail = True
        assert await worker_store.launch_worker({"checkInterval": 1}) is False
        assert scheduler.timers == []


class TestAutoRefresher:
    """Tests for AutoRefresher."""

    @pytest.fixture
    def refresher(self, task_store, worker_store, local_store):
        return AutoRefresher(task_store, worker_store, local_store, interval=0.01)

    @pytest.mark.asyncio
    async def test_off_by_default(self, refresher):
        """Test autorefresh starts disabled."""
        assert refresher.should_refresh is False

    @pytest.mark.asyncio
    async def test_ticks_skipped_when_off(self, refresher, client):
        """Test disabled ticks make no backend calls."""
        for _ in range(3):
            assert refresher.tick() is False
        await refresher.wait_idle()
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_tick_when_on_runs_one_cycle(self, refresher, client, task_store, worker_store):
        """Test an enabled tick refreshes tasks, task types and workers once."""
        refresher.set_auto_refresh(True)

        assert refresher.tick() is True
        await refresher.wait_idle()

        paths = sorted(r.url.path for r in client.requests)
        assert paths == ["/task/", "/task_type/", "/worker/"]
        assert len(task_store.tasks) == 2
        assert len(worker_store.workers) == 1

    @pytest.mark.asyncio
    async def test_off_then_on(self, refresher, client):
        """Test three ticks while off make no calls, then one tick after switching on runs one cycle."""
        for _ in range(3):
            assert refresher.tick() is False
        await refresher.wait_idle()
        assert client.requests == []

        refresher.set_auto_refresh(True)
        assert refresher.tick() is True
        await refresher.wait_idle()

        paths = sorted(r.url.path for r in client.requests)
        assert paths == ["/task/", "/task_type/", "/worker/"]

    @pytest.mark.asyncio
    async def test_toggle_persisted(self, refresher, local_store, task_store, worker_store):
        """Test the toggle survives a new session."""
        refresher.set_auto_refresh(True)
        assert local_store.get_item(SHOULD_REFRESH_KEY) == "true"

        again = AutoRefresher(task_store, worker_store, local_store)
        assert again.should_refresh is True

        again.set_auto_refresh(False)
        assert local_store.get_item(SHOULD_REFRESH_KEY) == "false"

    @pytest.mark.asyncio
    async def test_uses_current_filter(self, task_store, worker_store, local_store, client):
        """Test the filter holder is read on every cycle."""
        class Holder:
            filter = FilterConfig(states=["ERROR"])

        refresher = AutoRefresher(task_store, worker_store, local_store, filters=Holder())
        refresher.set_auto_refresh(True)
        refresher.tick()
        await refresher.wait_idle()

        task_requests = requests_to(client, "GET", "/task/")
        assert task_requests[0].url.params["states"] == "ERROR"

    @pytest.mark.asyncio
    async def test_run_refreshes_then_ticks(self, refresher, client):
        """Test run does an initial refresh plus one per enabled tick."""
        refresher.set_auto_refresh(True)

        await asyncio.wait_for(refresher.run(cycles=2), timeout=2)
        await refresher.wait_idle()

        assert len(requests_to(client, "GET", "/task/")) == 3

    @pytest.mark.asyncio
    async def test_run_initial_refresh_ignores_toggle(self, refresher, client):
        """Test the first load happens even with autorefresh off."""
        await asyncio.wait_for(refresher.run(cycles=2), timeout=2)
        await refresher.wait_idle()

        assert len(requests_to(client, "GET", "/task/")) == 1

    @pytest.mark.asyncio
    async def test_stop(self, refresher):
        """Test stop ends an open-ended run."""
        runner = asyncio.ensure_future(refresher.run())
        await asyncio.sleep(0.03)
        refresher.stop()
        await asyncio.wait_for(runner, timeout=1)
        await refresher.wait_idle()
