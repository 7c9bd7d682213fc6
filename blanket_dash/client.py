"""
HTTP client for the blanket backend.

Thin async wrapper over the backend's REST API plus a reconnecting
reader for its text/event-stream log endpoints. Records are returned
raw; normalization happens in the stores.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from blanket_dash.models import LogEvent


logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "http://localhost:8773"
DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRY_MS = 3000


class BackendError(RuntimeError):
    """A backend call failed at the transport or HTTP level."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BlanketClient:
    """
    Async REST client for tasks, task types and workers.

    Usage:
        async with BlanketClient("http://localhost:8773") as client:
            tasks = await client.list_tasks(limit=50)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "BlanketClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def stream(self, method: str, path: str, **kwargs: Any):
        """Open a streaming request (async context manager)."""
        return self._client.stream(method, path, **kwargs)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            raise BackendError(
                f"{method} {path} returned {response.status_code}: {response.text.strip()}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # Tasks

    async def list_tasks(
        self,
        limit: int = 50,
        reverse_sort: bool = True,
        params: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"limit": limit}
        if reverse_sort:
            query["reverseSort"] = "true"
        if params:
            query.update(params)
        return await self._request("GET", "/task/", params=query) or []

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/task/{task_id}")

    async def create_task(self, task_type: str, environment: Dict[str, str]) -> Any:
        return await self._request("POST", "/task/", json={"type": task_type, "environment": environment})

    async def stop_task(self, task_id: str) -> Any:
        return await self._request("PUT", f"/task/{task_id}/state", params={"state": "STOPPED"})

    async def delete_task(self, task_id: str) -> Any:
        return await self._request("DELETE", f"/task/{task_id}")

    # Task types

    async def list_task_types(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._request("GET", "/task_type/", params={"limit": limit}) or []

    async def get_task_type(self, name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/task_type/{name}")

    # Workers

    async def list_workers(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/worker/") or []

    async def launch_worker(self, config: Dict[str, Any]) -> Any:
        return await self._request("POST", "/worker/", json=config)

    async def stop_worker(self, pid: int) -> Any:
        return await self._request("PUT", f"/worker/{pid}/shutdown")

    def task_log_source(self, task_id: str, retry_ms: int = DEFAULT_RETRY_MS) -> "HttpEventSource":
        return HttpEventSource(self, f"/task/{task_id}/log", retry_ms=retry_ms)


def parse_event_stream(lines: List[str]) -> Tuple[List[LogEvent], Optional[int]]:
    """
    Parse complete text/event-stream lines.

    Returns:
        The dispatched events and the last `retry:` value seen, if any
    """
    parser = _EventStreamParser()
    events = [event for event in (parser.feed(line) for line in lines) if event is not None]
    return events, parser.retry_ms


class _EventStreamParser:
    """Incremental parser; `feed` returns an event when a blank line dispatches one."""

    def __init__(self) -> None:
        self.last_event_id: Optional[str] = None
        self.retry_ms: Optional[int] = None
        self._data: List[str] = []
        self._event = "message"

    def feed(self, line: str) -> Optional[LogEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value or "message"
        elif field == "id":
            self.last_event_id = value
        elif field == "retry" and value.isdigit():
            self.retry_ms = int(value)
        return None

    def _dispatch(self) -> Optional[LogEvent]:
        data, event = self._data, self._event
        self._data, self._event = [], "message"
        if not data:
            return None
        return LogEvent(id=self.last_event_id, event=event, data="\n".join(data))


class HttpEventSource:
    """
    Reconnecting server-sent-events reader.

    `events()` yields ("open", None) after every successful (re)connect,
    ("message", LogEvent) per event and ("error", None) when a connection
    drops. Dropped or finished streams are reopened after `retry_ms`,
    resuming with Last-Event-ID. Client errors (4xx) end the stream.
    """

    def __init__(self, client: BlanketClient, path: str, retry_ms: int = DEFAULT_RETRY_MS) -> None:
        self.client = client
        self.path = path
        self.retry_ms = retry_ms
        self.last_event_id: Optional[str] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def events(self) -> AsyncIterator[Tuple[str, Optional[LogEvent]]]:
        while not self._closed:
            headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
            if self.last_event_id:
                headers["Last-Event-ID"] = self.last_event_id

            try:
                async with self.client.stream("GET", self.path, headers=headers, timeout=None) as response:
                    if response.is_error:
                        raise BackendError(
                            f"GET {self.path} returned {response.status_code}",
                            status_code=response.status_code,
                        )

                    yield "open", None

                    parser = _EventStreamParser()
                    parser.last_event_id = self.last_event_id
                    async for line in response.aiter_lines():
                        if self._closed:
                            return
                        event = parser.feed(line.rstrip("\r"))
                        if parser.retry_ms is not None:
                            self.retry_ms = parser.retry_ms
                        if event is not None:
                            self.last_event_id = event.id
                            yield "message", event

            except BackendError as e:
                logger.warning(f"Log stream {self.path}: {e}")
                if e.status_code is not None and 400 <= e.status_code < 500:
                    self._closed = True
                yield "error", None
            except httpx.HTTPError as e:
                logger.warning(f"Log stream {self.path} dropped: {e}")
                yield "error", None

            if self._closed:
                return
            logger.debug(f"Reconnecting to {self.path} in {self.retry_ms}ms")
            await asyncio.sleep(self.retry_ms / 1000)
