"""In-memory stand-ins for the cluster API and the browser socket."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Callable, Optional

import httpx


def make_resource(
    name: str,
    rv: str,
    created: str = "2024-01-01T00:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "resourceVersion": rv, "creationTimestamp": created},
        **extra,
    }


def list_body(items: list[dict[str, Any]], rv: Optional[str] = None, **metadata: Any) -> dict[str, Any]:
    md = dict(metadata)
    if rv is not None:
        md["resourceVersion"] = rv
    return {"kind": "List", "items": items, "metadata": md}


def watch_line(phase: str, obj: dict[str, Any]) -> str:
    return json.dumps({"type": phase, "object": obj})


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeCluster:
    """Scripted cluster API served through ``httpx.MockTransport``.

    List responses and watch streams are consumed in order. When the watch
    script runs out, further watches stay open until ``release()``.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._lists: deque[httpx.Response] = deque()
        self._watches: deque[tuple[int, Any, list[str], bool]] = deque()
        self.default_list = list_body([], rv="1")
        self._released = False
        self.version = {"major": "1", "minor": "30", "gitVersion": "v1.30.2"}

    # scripting

    def queue_list(self, body: dict[str, Any], status: int = 200) -> None:
        self._lists.append(httpx.Response(status, json=body))

    def queue_watch(self, *lines: str, status: int = 200, body: Any = None, hold: bool = False) -> None:
        self._watches.append((status, body, list(lines), hold))

    def release(self) -> None:
        self._released = True

    # inspection

    @property
    def list_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "watch" not in r.url.params and r.url.path != "/version"]

    @property
    def watch_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.params.get("watch") == "1"]

    # transport

    async def _stream(self, lines: list[str], hold: bool):
        for line in lines:
            yield (line + "\n").encode()
        while hold and not self._released:
            await asyncio.sleep(0.01)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/version":
            if self.version is None:
                return httpx.Response(503, json={"kind": "Status", "code": 503, "message": "apiserver unavailable"})
            return httpx.Response(200, json=self.version)
        if request.url.params.get("watch") == "1":
            if self._watches:
                status, body, lines, hold = self._watches.popleft()
            else:
                status, body, lines, hold = 200, None, [], True
            if status >= 400:
                return httpx.Response(status, json=body or {})
            return httpx.Response(200, content=self._stream(lines, hold))
        if self._lists:
            return self._lists.popleft()
        return httpx.Response(200, json=self.default_list)

    def client(self, base_url: str = "https://cluster.test") -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=base_url)


class FakeTransport:
    """Browser side of a session: records sent frames, feeds inbound ones."""

    def __init__(self, fail_sends: int = 0) -> None:
        self.sent: list[dict[str, Any]] = []
        self.inbound: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.open = True
        self.closed_with: Optional[tuple[int, str]] = None
        self.fail_sends = fail_sends

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail_sends:
            self.fail_sends -= 1
            raise ConnectionResetError("socket closed")
        self.sent.append(payload)

    async def receive_text(self) -> Optional[str]:
        return await self.inbound.get()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.open = False
        self.closed_with = (code, reason)

    def push(self, message: Any) -> None:
        self.inbound.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def disconnect(self) -> None:
        self.open = False
        self.inbound.put_nowait(None)

    def frames(self, frame_type: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]
