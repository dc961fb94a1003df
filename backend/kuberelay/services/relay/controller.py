"""Reconnect state machine for the upstream watch.

::

    IDLE -> STARTING -> ACTIVE -> ERROR_DETECTED -> RESTARTING -> STARTING ...
                                   (any) -> CLOSED

At most one watch handle is alive at a time: every STARTING aborts the
previous one before opening the next, and a consumer whose handle has been
replaced never reports its failure.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Optional

import structlog

from kuberelay.services.relay.cursor import SessionState
from kuberelay.services.relay.errors import UpstreamError, UpstreamTransportError, WatchStreamEnded
from kuberelay.services.relay.pager import Pager
from kuberelay.services.relay.watch import WatchEvent, WatchHandle, WatchSession

logger = structlog.get_logger(__name__)


class ControllerState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    ERROR_DETECTED = "ERROR_DETECTED"
    RESTARTING = "RESTARTING"
    CLOSED = "CLOSED"


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    if task is not asyncio.current_task():
        with contextlib.suppress(asyncio.CancelledError):
            await task


class ReconnectController:
    def __init__(
        self,
        watch: WatchSession,
        pager: Pager,
        state: SessionState,
        on_event: Callable[[WatchEvent], Awaitable[object]],
        *,
        on_server_log: Optional[Callable[[str, str], Awaitable[object]]] = None,
        rotation_interval: float = 600.0,
        error_retry_delay: float = 1.2,
        open_retry_delay: float = 2.0,
        relist_limit: Optional[int] = None,
    ) -> None:
        self._watch = watch
        self._pager = pager
        self._state = state
        self._on_event = on_event
        self._on_server_log = on_server_log
        self.rotation_interval = rotation_interval
        self.error_retry_delay = error_retry_delay
        self.open_retry_delay = open_retry_delay
        self.relist_limit = relist_limit

        self.phase = ControllerState.IDLE
        self._handle: Optional[WatchHandle] = None
        self._consumer: Optional[asyncio.Task] = None
        self._rotation: Optional[asyncio.Task] = None
        self._restart: Optional[asyncio.Task] = None

    @property
    def handle(self) -> Optional[WatchHandle]:
        return self._handle

    @property
    def closed(self) -> bool:
        return self.phase is ControllerState.CLOSED

    async def start(self) -> None:
        if self.phase is not ControllerState.IDLE:
            return
        self._rotation = asyncio.create_task(self._rotate_periodically())
        self._rotation.set_name("relay_watch_rotation")
        await self.start_watch(reason="start")

    async def start_watch(self, reason: str = "restart") -> None:
        """Replace the current watch with a fresh one at the session cursor."""
        if self.closed or self._state.closed:
            return
        if self._state.reconnect_in_flight:
            logger.debug("relay.watch_start_skipped", reason=reason)
            return

        self._state.reconnect_in_flight = True
        failure: Optional[UpstreamError] = None
        try:
            self.phase = ControllerState.STARTING
            await self._stop_current()
            try:
                handle = await self._watch.open()
            except asyncio.CancelledError:
                raise
            except UpstreamError as exc:
                failure = exc
            except Exception as exc:
                failure = UpstreamTransportError(f"watch open failed: {str(exc) or exc.__class__.__name__}")
            else:
                if self.closed:
                    await handle.abort()
                    return
                self._handle = handle
                self.phase = ControllerState.ACTIVE
                self._state.watch_active = True
                self._consumer = asyncio.create_task(self._consume(handle))
                self._consumer.set_name(f"relay_watch_{handle.generation}")
                logger.debug("relay.watch_active", reason=reason, generation=handle.generation)
        finally:
            self._state.reconnect_in_flight = False

        if failure is not None:
            await self._handle_failure(failure, self.open_retry_delay)

    async def _stop_current(self) -> None:
        handle, self._handle = self._handle, None
        consumer, self._consumer = self._consumer, None
        self._state.watch_active = False
        await _cancel(consumer)
        if handle is not None:
            await handle.abort()

    async def _consume(self, handle: WatchHandle) -> None:
        error: UpstreamError
        try:
            await self._watch.consume(handle, self._on_event)
        except asyncio.CancelledError:
            raise
        except UpstreamError as exc:
            error = exc
        except Exception as exc:
            error = UpstreamTransportError(f"watch stream failed: {str(exc) or exc.__class__.__name__}")
        else:
            error = WatchStreamEnded()

        if handle is not self._handle or self.closed:
            # replaced or shutting down; the new owner decides what happens next
            return
        self._handle = None
        self._consumer = None
        self._state.watch_active = False
        await handle.abort()
        await self._handle_failure(error, self.error_retry_delay)

    async def _handle_failure(self, error: UpstreamError, delay: float) -> None:
        if self.closed:
            return
        self.phase = ControllerState.ERROR_DETECTED
        log = logger.info if isinstance(error, WatchStreamEnded) else logger.warning
        log(
            "relay.watch_failed",
            error=error.message,
            status=error.status,
            reason=error.reason,
            gone=error.is_gone,
            retry_in=delay,
        )

        if error.is_gone:
            await self._relist()
        if self.closed:
            return
        self.phase = ControllerState.RESTARTING
        self._schedule_restart(delay)

    async def _relist(self) -> None:
        try:
            page = await self._pager.fetch_page(limit=self.relist_limit, capture_cursor=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("relay.relist_failed", error=str(exc))
            if self._on_server_log is not None:
                await self._on_server_log("error", f"Failed to re-list after expired resource version: {exc}")
            return
        logger.info("relay.relisted", resource_version=page.resource_version, items=len(page.items))

    @property
    def _restart_pending(self) -> bool:
        return self._restart is not None and not self._restart.done()

    def _schedule_restart(self, delay: float) -> None:
        if self._restart_pending:
            logger.debug("relay.restart_already_pending")
            return
        self._restart = asyncio.create_task(self._restart_after(delay))
        self._restart.set_name("relay_watch_restart")

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._restart = None
        await self.start_watch(reason="error")

    async def _rotate_periodically(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.rotation_interval)
            if self.phase is not ControllerState.ACTIVE or self._restart_pending:
                # recovery owns the next watch
                logger.debug("relay.watch_rotation_skipped", phase=self.phase.value)
                continue
            logger.info("relay.watch_rotating", interval=self.rotation_interval)
            await self.start_watch(reason="rotation")

    async def close(self) -> None:
        """Stop everything. Safe to call any number of times."""
        if self.closed:
            return
        self.phase = ControllerState.CLOSED
        self._state.closed = True
        restart, self._restart = self._restart, None
        rotation, self._rotation = self._rotation, None
        for task in (rotation, restart):
            try:
                await _cancel(task)
            except Exception as exc:
                logger.warning("relay.controller.cancel_failed", error=str(exc))
        try:
            await self._stop_current()
        except Exception as exc:
            logger.warning("relay.controller.abort_failed", error=str(exc))
        logger.info("relay.controller_closed")
