"""One list-then-watch relay session per browser connection."""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

from kuberelay.config import Settings
from kuberelay.core.request_context import session_id_var
from kuberelay.schemas.frames import FrameType, ScrollRequest
from kuberelay.services.relay.controller import ReconnectController
from kuberelay.services.relay.cursor import ListQuery, ResourceCursor, SessionState
from kuberelay.services.relay.liveness import LivenessMonitor
from kuberelay.services.relay.pager import Pager
from kuberelay.services.relay.routing import DownstreamTransport, EventRouter
from kuberelay.services.relay.sorting import SortPolicy, creation_timestamp
from kuberelay.services.relay.watch import WatchSession
from kuberelay.services.upstream import UpstreamClient

logger = structlog.get_logger(__name__)

GOING_AWAY_CLOSE_CODE = 1001


class RelayTransport(DownstreamTransport, Protocol):
    async def receive_text(self) -> Optional[str]:
        """Next inbound text frame, ``None`` once the peer is gone."""
        ...


@dataclass(frozen=True)
class RelayConfig:
    """Engine settings, derived once from ``Settings`` at startup."""

    allowed_headers: frozenset[str] = frozenset()
    forward_headers: bool = True
    rotation_interval: float = 600.0
    error_retry_delay: float = 1.2
    open_retry_delay: float = 2.0
    heartbeat_interval: float = 25.0
    max_send_failures: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelayConfig":
        return cls(
            allowed_headers=settings.allowed_header_names,
            forward_headers=not settings.development,
            rotation_interval=settings.watch_rotation_seconds,
            error_retry_delay=settings.watch_error_retry_seconds,
            open_retry_delay=settings.watch_open_retry_seconds,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            max_send_failures=settings.max_send_failures,
        )

    def filter_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        if not self.forward_headers:
            return {}
        return {name: value for name, value in headers.items() if name.lower() in self.allowed_headers}


class RelaySession:
    """Wires pager, watch, controller, router and liveness for one connection.

    ``run`` returns once the browser disconnects, the liveness check fails
    or the router gives up; cleanup has completed by then.
    """

    def __init__(
        self,
        transport: RelayTransport,
        upstream: UpstreamClient,
        query: ListQuery,
        config: RelayConfig,
        *,
        headers: Optional[Mapping[str, str]] = None,
        limit: Optional[int] = None,
        initial_continue: Optional[str] = None,
        since_rv: Optional[str] = None,
        policy: SortPolicy = creation_timestamp,
    ) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.query = query
        self.config = config
        self.limit = limit
        self.initial_continue = initial_continue
        self._transport = transport
        self.state = SessionState(cursor=ResourceCursor(resource_version=since_rv or None))

        forwarded = config.filter_headers(headers or {})
        self.pager = Pager(upstream, query, self.state, headers=forwarded, policy=policy)
        self.watch = WatchSession(upstream, query, self.state, headers=forwarded)
        self.router = EventRouter(
            transport,
            max_send_failures=config.max_send_failures,
            on_terminate=lambda: self.request_termination(GOING_AWAY_CLOSE_CODE, "downstream send failures"),
        )
        self.controller = ReconnectController(
            self.watch,
            self.pager,
            self.state,
            self.router.send_event,
            on_server_log=self.router.server_log,
            rotation_interval=config.rotation_interval,
            error_retry_delay=config.error_retry_delay,
            open_retry_delay=config.open_retry_delay,
            relist_limit=limit,
        )
        self.liveness = LivenessMonitor(
            self.router.send_ping,
            lambda: self.request_termination(GOING_AWAY_CLOSE_CODE, "heartbeat timeout"),
            interval=config.heartbeat_interval,
        )

        self._stopped = asyncio.Event()
        self._reader: Optional[asyncio.Task] = None
        self._close_code: Optional[int] = None
        self._close_reason = ""
        self._cleaned_up = False
        self.cleanup_runs = 0

    async def run(self) -> None:
        token = session_id_var.set(self.session_id)
        try:
            logger.info(
                "relay.session_started",
                path=self.query.path,
                since_rv=self.state.resource_version,
                limit=self.limit,
            )
            self.liveness.start()
            self._reader = asyncio.create_task(self._read_loop())
            self._reader.set_name("relay_reader")

            await self.send_initial_snapshot()
            if not self._stopped.is_set():
                await self.controller.start()
            await self._stopped.wait()
        finally:
            await self.cleanup()
            session_id_var.reset(token)

    async def send_initial_snapshot(self) -> None:
        try:
            page = await self.pager.fetch_page(
                limit=self.limit,
                continuation_token=self.initial_continue,
                capture_cursor=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("relay.initial_list_failed", error=str(exc), path=self.query.path)
            await self.router.send_initial_error(str(exc) or "Initial list failed")
            await self.router.server_log("error", f"Initial list failed: {exc}")
            return
        await self.router.send_snapshot(page)
        logger.info("relay.snapshot_sent", items=len(page.items), resource_version=page.resource_version)

    async def _read_loop(self) -> None:
        try:
            while not self._stopped.is_set():
                raw = await self._transport.receive_text()
                if raw is None:
                    logger.info("relay.client_disconnected")
                    break
                self.liveness.acknowledge()
                await self.handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("relay.reader_failed", error=str(exc))
        finally:
            self._stopped.set()

    async def handle_message(self, raw: str) -> None:
        try:
            message: Any = json.loads(raw)
        except ValueError:
            logger.warning("relay.client_message_invalid", raw=raw[:200])
            return
        if not isinstance(message, dict):
            logger.warning("relay.client_message_invalid", raw=raw[:200])
            return

        kind = message.get("type")
        if kind == FrameType.PONG.value:
            return
        if kind == FrameType.SCROLL.value:
            request = ScrollRequest.from_message(message)
            if request is None:
                logger.debug("relay.scroll_ignored", message=message)
                return
            await self.serve_scroll(request)
            return
        logger.debug("relay.client_message_ignored", type=kind)

    async def serve_scroll(self, request: ScrollRequest) -> None:
        logger.info("relay.scroll_requested", limit=request.limit)
        try:
            page = await self.pager.fetch_page(
                limit=request.limit,
                continuation_token=request.continue_token,
                capture_cursor=False,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("relay.scroll_failed", error=str(exc))
            await self.router.server_log("error", "Page fetch failed")
            await self.router.send_page_error(str(exc) or "Page fetch failed")
            return
        await self.router.send_page(page)

    def request_termination(self, code: int = GOING_AWAY_CLOSE_CODE, reason: str = "") -> None:
        if self._stopped.is_set():
            return
        self._close_code = code
        self._close_reason = reason
        logger.warning("relay.session_terminating", code=code, reason=reason)
        self._stopped.set()

    async def cleanup(self) -> None:
        """Tear the session down; later calls do nothing."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.cleanup_runs += 1
        self.state.closed = True

        steps = (
            ("liveness", self.liveness.stop),
            ("controller", self.controller.close),
            ("reader", self._stop_reader),
            ("transport", self._close_transport),
        )
        for name, step in steps:
            try:
                await step()
            except Exception as exc:
                logger.warning("relay.cleanup_step_failed", step=name, error=str(exc))
        logger.info("relay.session_closed", resource_version=self.state.resource_version)

    async def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        if reader is None or reader.done():
            return
        reader.cancel()
        if reader is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await reader

    async def _close_transport(self) -> None:
        if self._close_code is not None and self._transport.is_open:
            await self._transport.close(self._close_code, self._close_reason)
