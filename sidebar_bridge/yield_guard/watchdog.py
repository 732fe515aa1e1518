from __future__ import annotations

import asyncio
import contextlib
import logging

from .controller import YieldController

_LOGGER = logging.getLogger("sidebar_bridge.yield_guard.watchdog")


class FrameWatchdog:
    """Polling self-heal for the sidebar DOM.

    Pages sometimes strip foreign nodes. The watchdog never reinserts anything
    itself: it reports what it saw to the controller, which owns attachment and
    knows whether the frame is supposed to be detached right now.
    """

    def __init__(self, controller: YieldController, *, interval_s: float = 0.5) -> None:
        self._controller = controller
        self._interval_s = max(0.01, float(interval_s))
        self._task: asyncio.Task | None = None
        self.heal_count = 0

    def check(self) -> str | None:
        host = self._controller.host
        if host.container is None:
            return None
        if not host.container_connected:
            if self._controller.heal("CONTAINER_RESTORED"):
                self.heal_count += 1
                return "container_restored"
            return None
        if self._controller.yielding and host.frame_connected:
            if self._controller.enforce_yield("FRAME_REINSERTED"):
                self.heal_count += 1
                return "frame_redetached"
        return None

    def start(self) -> bool:
        if self._task is not None and not self._task.done():
            return True
        self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            try:
                action = self.check()
                if action:
                    _LOGGER.info("frame_watchdog action=%s heal_count=%s", action, self.heal_count)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("frame_watchdog check_failed error=%s", exc)
            await asyncio.sleep(self._interval_s)


__all__ = ["FrameWatchdog"]
