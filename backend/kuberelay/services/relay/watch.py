from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from kuberelay.services.relay.cursor import ListQuery, SessionState
from kuberelay.services.relay.errors import (
    MalformedFrameError,
    UpstreamError,
    UpstreamTransportError,
    WatchStreamEnded,
)
from kuberelay.services.upstream import UpstreamClient

logger = structlog.get_logger(__name__)


class WatchPhase(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class WatchEvent:
    phase: WatchPhase
    resource: Optional[dict[str, Any]] = None
    resource_version: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        metadata = (self.resource or {}).get("metadata")
        name = metadata.get("name") if isinstance(metadata, dict) else None
        return name if isinstance(name, str) else None


def decode_frame(line: str) -> dict[str, Any]:
    """Parse one newline-delimited watch frame."""
    try:
        frame = json.loads(line)
    except ValueError as exc:
        raise MalformedFrameError(f"watch line is not JSON: {exc}", line=line) from exc
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        raise MalformedFrameError("watch frame has no type", line=line)
    return frame


def _object_resource_version(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    metadata = obj.get("metadata")
    rv = metadata.get("resourceVersion") if isinstance(metadata, dict) else None
    return str(rv) if rv else None


class WatchHandle:
    """An open watch response. ``abort`` may be called any number of times."""

    def __init__(self, response: httpx.Response, generation: int) -> None:
        self._response = response
        self.generation = generation
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def lines(self) -> AsyncIterator[str]:
        return self._response.aiter_lines()

    async def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        try:
            await self._response.aclose()
        except Exception as exc:
            logger.debug("relay.watch.abort_failed", generation=self.generation, error=str(exc))


class WatchSession:
    """Opens and reads the incremental event stream for one query."""

    def __init__(
        self,
        upstream: UpstreamClient,
        query: ListQuery,
        state: SessionState,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._upstream = upstream
        self._query = query
        self._state = state
        self._headers = dict(headers or {})
        self._generation = 0

    def build_params(self) -> dict[str, str]:
        params = {"watch": "1", "allowWatchBookmarks": "true"}
        params.update(self._query.selector_params())
        params.update(self._state.cursor.watch_params())
        return params

    async def open(self) -> WatchHandle:
        params = self.build_params()
        response = await self._upstream.open_stream(self._query.path, params=params, headers=self._headers)
        self._generation += 1
        logger.info(
            "relay.watch_started",
            path=self._query.path,
            generation=self._generation,
            resource_version=params.get("resourceVersion"),
        )
        return WatchHandle(response, self._generation)

    def to_event(self, frame: dict[str, Any]) -> Optional[WatchEvent]:
        """Classify a decoded frame; ``ERROR`` frames raise, unknown phases give ``None``."""
        obj = frame.get("object")
        try:
            phase = WatchPhase(frame["type"])
        except ValueError:
            logger.warning("relay.watch.unknown_phase", phase=frame.get("type"))
            return None

        if phase is WatchPhase.ERROR:
            raise UpstreamError.classify(None, obj)
        if phase is WatchPhase.BOOKMARK:
            return WatchEvent(phase, resource_version=_object_resource_version(obj))
        return WatchEvent(
            phase,
            resource=obj if isinstance(obj, dict) else None,
            resource_version=_object_resource_version(obj),
        )

    async def consume(self, handle: WatchHandle, on_event: Callable[[WatchEvent], Awaitable[None]]) -> None:
        """Deliver events until the stream ends.

        Always finishes by raising: ``WatchStreamEnded`` on a clean end, the
        classified ``UpstreamError`` otherwise.
        """
        try:
            async for line in handle.lines():
                if not line.strip():
                    continue
                try:
                    frame = decode_frame(line)
                except MalformedFrameError as exc:
                    logger.warning("relay.watch.malformed_frame", error=exc.message, line=exc.line[:200])
                    continue

                event = self.to_event(frame)
                if event is None:
                    continue
                if event.resource_version:
                    self._state.advance(event.resource_version)
                if event.phase is WatchPhase.BOOKMARK:
                    continue
                if event.name is None:
                    logger.warning("relay.watch.unnamed_resource", phase=event.phase.value)
                    continue
                await on_event(event)
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"watch stream failed: {exc}") from exc

        raise WatchStreamEnded()
