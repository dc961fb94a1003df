from __future__ import annotations

from collections.abc import Callable
from typing import Any, Optional, Protocol

import structlog

from kuberelay.schemas.frames import (
    ErrorFrame,
    EventFrame,
    Frame,
    FrameType,
    PageFrame,
    PingFrame,
    ServerLogFrame,
    SnapshotFrame,
)
from kuberelay.services.relay.errors import DownstreamSendError
from kuberelay.services.relay.pager import Page
from kuberelay.services.relay.watch import WatchEvent

logger = structlog.get_logger(__name__)


class DownstreamTransport(Protocol):
    """The browser side of a relay session."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class EventRouter:
    """Sends frames downstream in the order they are produced.

    Sending never raises. After ``max_send_failures`` consecutive failures
    ``on_terminate`` is called once.
    """

    def __init__(
        self,
        transport: DownstreamTransport,
        *,
        max_send_failures: int = 3,
        on_terminate: Optional[Callable[[], None]] = None,
    ) -> None:
        self._transport = transport
        self._max_send_failures = max_send_failures
        self._on_terminate = on_terminate
        self._snapshot_done = False
        self._consecutive_failures = 0
        self._terminated = False

    @property
    def snapshot_done(self) -> bool:
        return self._snapshot_done

    async def _send(self, frame: Frame) -> bool:
        frame_type = frame.type if isinstance(frame.type, str) else frame.type.value
        if not self._transport.is_open:
            logger.debug("relay.router.transport_closed", frame=frame_type)
            return False
        try:
            await self._transport.send_json(frame.to_payload())
        except Exception as exc:
            error = DownstreamSendError(str(exc) or exc.__class__.__name__, frame_type=frame_type)
            self._consecutive_failures += 1
            logger.warning(
                "relay.router.send_failed",
                frame=frame_type,
                error=error.message,
                failures=self._consecutive_failures,
            )
            if self._consecutive_failures >= self._max_send_failures and not self._terminated:
                self._terminated = True
                logger.warning("relay.router.giving_up", failures=self._consecutive_failures)
                if self._on_terminate is not None:
                    self._on_terminate()
            return False
        self._consecutive_failures = 0
        return True

    async def send_snapshot(self, page: Page) -> bool:
        if self._snapshot_done:
            logger.debug("relay.router.snapshot_already_sent")
            return False
        self._snapshot_done = True
        return await self._send(
            SnapshotFrame(
                items=page.items,
                continue_token=page.continuation_token,
                remaining_item_count=page.remaining_item_count,
                resource_version=page.resource_version,
            )
        )

    async def send_initial_error(self, message: str) -> bool:
        self._snapshot_done = True
        return await self._send(ErrorFrame(type=FrameType.INITIAL_ERROR, message=message))

    async def send_event(self, event: WatchEvent) -> bool:
        return await self._send(EventFrame(type=FrameType(event.phase.value), item=event.resource or {}))

    async def send_page(self, page: Page) -> bool:
        return await self._send(
            PageFrame(
                items=page.items,
                continue_token=page.continuation_token,
                remaining_item_count=page.remaining_item_count,
            )
        )

    async def send_page_error(self, message: str) -> bool:
        return await self._send(ErrorFrame(type=FrameType.PAGE_ERROR, message=message))

    async def server_log(self, level: str, message: str) -> bool:
        return await self._send(ServerLogFrame(level=level, message=message))

    async def send_ping(self) -> bool:
        return await self._send(PingFrame())
