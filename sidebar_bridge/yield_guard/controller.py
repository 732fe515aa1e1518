from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..messages import FRAME_YIELD_STATE, YIELD_STATE_CHANGED, message, now_ms
from .frame_host import FrameHost
from .state import YieldState, YieldStateMachine

_LOGGER = logging.getLogger("sidebar_bridge.yield_guard")

Publisher = Callable[[dict[str, Any]], None]


class YieldController:
    """Content-script owner of the authoritative yield state for one tab.

    Applies the DOM side effects of each effective transition through the
    FrameHost and announces the result. Transitions that do not change the
    phase return the current snapshot without touching the DOM or the bus.
    """

    def __init__(
        self,
        host: FrameHost,
        *,
        publish: Publisher | None = None,
        post_to_frame: Publisher | None = None,
    ) -> None:
        self.machine = YieldStateMachine()
        self.host = host
        self._publish = publish
        self._post_to_frame = post_to_frame
        host.on_resume_requested = lambda: self.resume("PLACEHOLDER_RESUME_BUTTON")

    @property
    def yielding(self) -> bool:
        return self.machine.yielding

    def snapshot(self) -> YieldState:
        return YieldState(
            state=self.machine.phase,
            ready=self.host.frame_exists,
            frame_present=self.host.frame_connected,
            sidebar_visible=bool(self.host.visible),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────────────

    def suspend(self, reason: str = "unknown") -> YieldState:
        t = self.machine.suspend(reason)
        if not t.changed:
            return self.snapshot()

        self.host.show_placeholder()
        if self.host.detach_frame():
            _LOGGER.info("yield_guard frame_removed reason=%s", t.reason)
        else:
            # Detach happens in on_frame_mounted once the frame exists.
            _LOGGER.info("yield_guard yielding_before_frame_ready reason=%s", t.reason)
        _LOGGER.info("yield_guard state=%s reason=%s", t.current, t.reason)
        self._notify_state_changed(t.reason)
        return self.snapshot()

    def resume(self, reason: str = "unknown") -> YieldState:
        t = self.machine.resume(reason)
        if not t.changed:
            return self.snapshot()

        self.host.hide_placeholder()
        if self.host.reattach_frame():
            _LOGGER.info("yield_guard frame_restored reason=%s", t.reason)
        _LOGGER.info("yield_guard state=%s reason=%s", t.current, t.reason)
        self._notify_state_changed(t.reason)
        # The frame was just reattached and may have missed the broadcast.
        self._post_state_to_frame(t.reason)
        return self.snapshot()

    def toggle(self, reason: str = "manual") -> YieldState:
        return self.resume(reason) if self.yielding else self.suspend(reason)

    def set_yield(self, enable: bool | None, reason: str = "unknown") -> YieldState:
        if enable is None:
            return self.toggle(reason)
        return self.suspend(reason) if enable else self.resume(reason)

    # ─────────────────────────────────────────────────────────────────────────
    # DOM lifecycle hooks
    # ─────────────────────────────────────────────────────────────────────────

    def on_frame_mounted(self) -> None:
        if self.yielding:
            self.host.show_placeholder()
            self.host.detach_frame()
            _LOGGER.info("yield_guard frame_removed reason=INIT_WHILE_YIELDING")
        self._post_state_to_frame("FRAME_READY")

    def enforce_yield(self, reason: str) -> bool:
        """Re-apply the detach when the frame shows up attached while yielding."""
        if not self.yielding or not self.host.frame_connected:
            return False
        self.host.show_placeholder()
        removed = self.host.detach_frame()
        if removed:
            _LOGGER.info("yield_guard frame_removed reason=%s", reason)
        return removed

    def heal(self, reason: str = "CONTAINER_RESTORED") -> bool:
        """Yield-aware restoration path for an externally removed container."""
        restored = self.host.restore_container()
        enforced = self.enforce_yield(reason)
        return restored or enforced

    # ─────────────────────────────────────────────────────────────────────────
    # Announcements
    # ─────────────────────────────────────────────────────────────────────────

    def _notify_state_changed(self, reason: str) -> None:
        if self._publish is None:
            return
        msg = message(YIELD_STATE_CHANGED, reason=reason, state=self.snapshot().to_dict(), timestamp=now_ms())
        try:
            self._publish(msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("yield_guard publish_failed reason=%s error=%s", reason, exc)

    def _post_state_to_frame(self, reason: str) -> None:
        if self._post_to_frame is None or not self.host.frame_connected:
            return
        msg = message(FRAME_YIELD_STATE, reason=reason, state=self.snapshot().to_dict(), timestamp=now_ms())
        try:
            self._post_to_frame(msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("yield_guard post_to_frame_failed reason=%s error=%s", reason, exc)


__all__ = ["YieldController"]
