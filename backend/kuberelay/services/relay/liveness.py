from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


class LivenessMonitor:
    """Heartbeats the browser connection.

    Each interval either sends a probe or, when the previous probe was never
    acknowledged, fires ``on_timeout`` (at most once) and stops.
    """

    def __init__(
        self,
        send_probe: Callable[[], Awaitable[Any]],
        on_timeout: Callable[[], None],
        *,
        interval: float = 25.0,
    ) -> None:
        self._send_probe = send_probe
        self._on_timeout = on_timeout
        self.interval = interval
        self._awaiting_ack = False
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        self._task.set_name("relay_liveness")

    def acknowledge(self) -> None:
        """Any inbound client frame counts as an acknowledgment."""
        self._awaiting_ack = False

    async def tick(self) -> bool:
        """Run one heartbeat step; ``False`` once the connection was declared dead."""
        if self._fired:
            return False
        if self._awaiting_ack:
            self._fired = True
            logger.warning("relay.liveness.missed_ack", interval=self.interval)
            self._on_timeout()
            return False
        self._awaiting_ack = True
        await self._send_probe()
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not await self.tick():
                return

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
