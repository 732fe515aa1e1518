"""Embedded UI frame: mirrors the tab's yield state and gates outgoing requests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import BridgeError
from .event_bus import EventBus
from .messages import (
    FRAME_YIELD_STATE,
    UI_GET_YIELD_STATE,
    UI_SET_YIELD_STATE,
    YIELD_STATE_CHANGED,
    ContextRef,
    message,
    message_type,
)
from .yield_guard import YieldPhase, YieldState

_LOGGER = logging.getLogger("sidebar_bridge.ui_frame")


def _coerce_state(raw: Any) -> YieldState:
    # Anything that is not an explicit YIELDING report counts as ACTIVE.
    try:
        return YieldState.from_dict(raw)
    except ValueError:
        return YieldState(state=YieldPhase.ACTIVE)


class UIFrameContext:
    def __init__(self, bus: EventBus, tab_id: int, *, timeout: float | None = None) -> None:
        self.bus = bus
        self.tab_id = int(tab_id)
        self.ref = ContextRef.frame(self.tab_id)
        self.state = YieldState()
        self.last_error: str | None = None
        self.aborted_streams = 0
        self._timeout = timeout
        self._stream: asyncio.Task | None = None

    def attach(self) -> None:
        self.bus.register(self.ref, self.handle)

    def detach(self) -> None:
        self.bus.unregister(self.ref)

    @property
    def notice_visible(self) -> bool:
        return self.state.yielding

    def can_send(self) -> bool:
        return not self.state.yielding

    # ─────────────────────────────────────────────────────────────────────────
    # Incoming state
    # ─────────────────────────────────────────────────────────────────────────

    def handle(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        if message_type(msg) in (YIELD_STATE_CHANGED, FRAME_YIELD_STATE):
            self.apply_state(msg.get("state"))
        return None

    def apply_state(self, raw: Any) -> YieldState:
        """Last write wins; entering YIELDING aborts whatever is streaming."""
        previous = self.state
        self.state = _coerce_state(raw)
        if self.state.yielding and not previous.yielding:
            if self.abort_stream():
                _LOGGER.info("ui_frame stream_aborted tab=%s", self.tab_id)
        return self.state

    # ─────────────────────────────────────────────────────────────────────────
    # Streaming requests
    # ─────────────────────────────────────────────────────────────────────────

    def start_stream(self, work: Callable[[], Awaitable[Any]]) -> asyncio.Task | None:
        if not self.can_send():
            _LOGGER.debug("ui_frame send_blocked tab=%s", self.tab_id)
            return None
        self.abort_stream()
        task = asyncio.ensure_future(work())
        self._stream = task
        return task

    def abort_stream(self) -> bool:
        task = self._stream
        self._stream = None
        if task is None or task.done():
            return False
        task.cancel()
        self.aborted_streams += 1
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Requests to the background
    # ─────────────────────────────────────────────────────────────────────────

    async def refresh_state(self) -> YieldState:
        try:
            reply = await self.bus.request(
                ContextRef.background(),
                message(UI_GET_YIELD_STATE),
                sender=self.ref,
                timeout=self._timeout,
            )
        except BridgeError as exc:
            _LOGGER.debug("ui_frame refresh_failed tab=%s error=%s", self.tab_id, exc)
            return self.apply_state(None)
        if not isinstance(reply, dict) or not reply.get("ok"):
            return self.apply_state(None)
        return self.apply_state(reply.get("state"))

    async def set_yield(self, enable: bool, reason: str = "PREFERENCES") -> dict[str, Any]:
        try:
            reply = await self.bus.request(
                ContextRef.background(),
                message(UI_SET_YIELD_STATE, enable=bool(enable), reason=reason),
                sender=self.ref,
                timeout=self._timeout,
            )
        except BridgeError as exc:
            reply = {"ok": False, "error": str(exc.kind), "detail": str(exc)}

        if isinstance(reply, dict) and reply.get("ok"):
            self.last_error = None
            self.apply_state(reply.get("state"))
            return reply

        failure = reply if isinstance(reply, dict) else {"ok": False, "error": "malformed reply"}
        self.last_error = str(failure.get("error") or "unknown error")
        _LOGGER.warning("ui_frame set_yield_failed tab=%s enable=%s error=%s", self.tab_id, enable, self.last_error)
        await self.refresh_state()
        return failure


__all__ = ["UIFrameContext"]
