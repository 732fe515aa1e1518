"""Per-tab content script context: hosts the sidebar and answers yield commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .artifact_reader import ArtifactReader
from .config import BridgeConfig
from .errors import BridgeError
from .event_bus import EventBus
from .messages import (
    CONTENT_READY,
    FETCH_RESOURCE_TEXT,
    GET_YIELD_STATE,
    LOOKUP_RESOURCE_URL,
    PING,
    PONG,
    SET_YIELD,
    TOGGLE_YIELD,
    ContextRef,
    message,
    message_type,
    now_ms,
)
from .yield_guard import FrameHost, FrameWatchdog, YieldController

_LOGGER = logging.getLogger("sidebar_bridge.content_script")


class ContentScriptContext:
    def __init__(
        self,
        bus: EventBus,
        tab_id: int,
        *,
        config: BridgeConfig | None = None,
        host: FrameHost | None = None,
        url: str = "about:blank",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.bus = bus
        self.tab_id = int(tab_id)
        self.ref = ContextRef.content(self.tab_id)
        self.config = config or BridgeConfig()
        self.url = url
        self._sleep = sleep

        self.host = host or FrameHost()
        self.controller = YieldController(self.host, publish=self._publish, post_to_frame=self._post_to_frame)
        self.watchdog = FrameWatchdog(self.controller, interval_s=self.config.watchdog_interval_s)
        self.artifacts = ArtifactReader(bus, self.ref, timeout=self.config.request_timeout_s)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def attach(self) -> None:
        self.bus.register(self.ref, self.handle)

    def mount_frame(self) -> None:
        self.host.mount()
        self.host.visible = True
        self.controller.on_frame_mounted()

    async def start(self, *, mount: bool = True, announce: bool = True, watchdog: bool = False) -> bool:
        """Attach to the bus, build the sidebar and tell the background this document is ready."""
        self.attach()
        if mount:
            self.mount_frame()
        if watchdog:
            self.watchdog.start()
        if announce:
            return await self.announce_ready()
        return True

    async def stop(self) -> None:
        await self.watchdog.stop()
        self.bus.unregister(self.ref)

    async def announce_ready(self) -> bool:
        """Send CONTENT_READY, retrying while the background is still starting up."""
        attempts = max(1, int(self.config.content_ready_attempts))
        for attempt in range(1, attempts + 1):
            try:
                await self.bus.request(
                    ContextRef.background(),
                    message(CONTENT_READY, url=self.url, timestamp=now_ms()),
                    sender=self.ref,
                    timeout=self.config.request_timeout_s,
                )
                return True
            except BridgeError as exc:
                _LOGGER.debug("content_ready attempt_failed tab=%s attempt=%s error=%s", self.tab_id, attempt, exc)
            if attempt < attempts:
                await self._sleep(self.config.content_ready_retry_delay_s)
        _LOGGER.warning("content_ready gave_up tab=%s attempts=%s", self.tab_id, attempts)
        return False

    # ─────────────────────────────────────────────────────────────────────────
    # Bus handler
    # ─────────────────────────────────────────────────────────────────────────

    def handle(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        kind = message_type(msg)
        if kind == PING:
            return {
                "type": PONG,
                "nonce": msg.get("nonce"),
                "timestamp": msg.get("timestamp"),
                "responseTime": now_ms(),
            }

        reason = str(msg.get("reason") or "EXTERNAL")
        try:
            if kind == SET_YIELD:
                state = self.controller.set_yield(bool(msg.get("enable")), reason)
            elif kind == TOGGLE_YIELD:
                state = self.controller.toggle(reason)
            elif kind == GET_YIELD_STATE:
                state = self.controller.snapshot()
            else:
                return None
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("yield_command_failed type=%s tab=%s error=%s", kind, self.tab_id, exc)
            return {"success": False, "error": str(exc)}
        return {"success": True, "state": state.to_dict()}

    # ─────────────────────────────────────────────────────────────────────────
    # Page helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def lookup_resource_url(self, resource_id: str) -> dict[str, Any]:
        try:
            reply = await self.bus.request(
                ContextRef.background(),
                message(LOOKUP_RESOURCE_URL, resourceId=resource_id),
                sender=self.ref,
                timeout=self.config.request_timeout_s,
            )
        except BridgeError as exc:
            return {"ok": False, "url": None, "error": str(exc.kind)}
        return reply if isinstance(reply, dict) else {"ok": False, "url": None}

    async def fetch_resource_text(self, resource_id: str) -> dict[str, Any]:
        """Fetch a captured resource through the background using its signed URL."""
        found = await self.lookup_resource_url(resource_id)
        url = found.get("url")
        if not url:
            return {"success": False, "error": "No captured url"}
        try:
            reply = await self.bus.request(
                ContextRef.background(),
                message(FETCH_RESOURCE_TEXT, url=url),
                sender=self.ref,
                timeout=self.config.request_timeout_s,
            )
        except BridgeError as exc:
            return {"success": False, "error": str(exc.kind)}
        return reply if isinstance(reply, dict) else {"success": False, "error": "malformed reply"}

    def _publish(self, msg: dict[str, Any]) -> None:
        self.bus.broadcast(msg, sender=self.ref)

    def _post_to_frame(self, msg: dict[str, Any]) -> None:
        self.bus.broadcast(msg, sender=self.ref, to=ContextRef.frame(self.tab_id))


__all__ = ["ContentScriptContext"]
