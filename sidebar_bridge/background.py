"""Background context: owns both caches, the shadow yield state and all bus handlers.

Each handler runs to completion on the single event loop, so every cache
operation is atomic relative to the others without extra locking.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .caches import ArtifactCache, EphemeralUrlCache, ResourceUrlCapture
from .config import BridgeConfig
from .connection import ConnectionSupervisor, ContextInjector
from .errors import BridgeError
from .event_bus import LocalEventBus
from .gateway import BridgeGateway
from .http_client import HttpClientError, fetch_bytes, http_get
from .messages import (
    CONTENT_READY,
    FETCH_RESOURCE_TEXT,
    GET_ARTIFACT_CHUNK,
    LOOKUP_RESOURCE_URL,
    RECORD_RESOURCE_URL,
    RELEASE_ARTIFACT,
    STORE_ARTIFACT,
    UI_GET_YIELD_STATE,
    UI_SET_YIELD_STATE,
    YIELD_STATE_CHANGED,
    ContextRef,
    message_type,
    now_ms,
)
from .yield_guard import YieldCoordinator, YieldOutcome

_LOGGER = logging.getLogger("sidebar_bridge.background")

Fetcher = Callable[[str], bytes]
TextFetcher = Callable[[str], dict[str, Any]]

_PREVIEW_CHARS = 300


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except Exception:
        return None


class BackgroundContext:
    ref = ContextRef.background()

    def __init__(
        self,
        bus: LocalEventBus,
        *,
        injector: ContextInjector | None = None,
        config: BridgeConfig | None = None,
        fetcher: Fetcher | None = None,
        text_fetcher: TextFetcher | None = None,
        capture: ResourceUrlCapture | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.bus = bus
        self.config = config or BridgeConfig.from_env()
        cfg = self.config

        self.artifacts = ArtifactCache(
            chunk_size=cfg.artifact_chunk_size,
            max_entries=cfg.artifact_max_entries,
            max_bytes=cfg.artifact_max_bytes,
        )
        self.resource_urls = EphemeralUrlCache(ttl_s=cfg.resource_url_ttl_s, max_entries=cfg.resource_url_max_entries)
        self.capture = capture or ResourceUrlCapture()

        self.supervisor = ConnectionSupervisor(bus, injector, config=cfg, origin=self.ref, sleep=sleep)
        self.coordinator = YieldCoordinator(self.supervisor, config=cfg, sleep=sleep)

        self._fetch: Fetcher = fetcher or (lambda url: fetch_bytes(url, cfg))
        self._fetch_text: TextFetcher = text_fetcher or (lambda url: http_get(url, cfg))
        self._tasks: set[asyncio.Task] = set()
        self.gateway: BridgeGateway | None = None
        self._handlers: dict[str, Callable[[dict[str, Any], ContextRef], Awaitable[Any]]] = {
            YIELD_STATE_CHANGED: self._on_yield_state_changed,
            CONTENT_READY: self._on_content_ready,
            UI_GET_YIELD_STATE: self._on_ui_get_yield_state,
            UI_SET_YIELD_STATE: self._on_ui_set_yield_state,
            STORE_ARTIFACT: self._on_store_artifact,
            GET_ARTIFACT_CHUNK: self._on_get_artifact_chunk,
            RELEASE_ARTIFACT: self._on_release_artifact,
            RECORD_RESOURCE_URL: self._on_record_resource_url,
            LOOKUP_RESOURCE_URL: self._on_lookup_resource_url,
            FETCH_RESOURCE_TEXT: self._on_fetch_resource_text,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def attach(self) -> None:
        self.bus.register(self.ref, self.handle)

    def detach(self) -> None:
        self.bus.unregister(self.ref)

    async def start_gateway(self, *, host: str | None = None, port: int | None = None) -> BridgeGateway:
        """Expose this bus to out-of-process contexts over the local WebSocket gateway."""
        if self.gateway is None:
            self.gateway = BridgeGateway(self.bus, host=host, port=port, config=self.config)
        await self.gateway.start()
        return self.gateway

    async def stop_gateway(self) -> None:
        gateway = self.gateway
        self.gateway = None
        if gateway is not None:
            await gateway.stop()

    async def drain(self) -> None:
        """Wait for background tasks spawned by handlers (reapply after navigation)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "artifacts": self.artifacts.stats(),
            "resourceUrls": self.resource_urls.stats(),
            "shadow": {str(tab): st.to_dict() for tab, st in sorted(self.coordinator.shadow_tabs().items())},
            "pendingTasks": len(self._tasks),
            "gateway": self.gateway.status() if self.gateway is not None else None,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Host hooks (tab lifecycle + passive network observation)
    # ─────────────────────────────────────────────────────────────────────────

    def observe_request(self, tab_id: Any, url: str) -> bool:
        resource_id = self.capture.match(tab_id, url)
        if resource_id is None:
            return False
        self.resource_urls.record(int(tab_id), resource_id, url)
        return True

    def on_tab_loading(self, tab_id: int) -> None:
        # A new document produces new signed URLs.
        self.resource_urls.invalidate_tab(tab_id)

    def on_tab_removed(self, tab_id: int) -> None:
        self.resource_urls.invalidate_tab(tab_id)
        self.coordinator.forget_tab(tab_id)

    async def toggle_yield(self, tab_id: int, reason: str = "COMMAND") -> YieldOutcome:
        return await self.coordinator.toggle_yield(tab_id, reason)

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def handle(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        kind = message_type(msg)
        handler = self._handlers.get(kind)
        if handler is None:
            return {"ok": False, "error": f"unsupported message type: {kind or '<missing>'}"}
        return await handler(msg, sender)

    def _tab_for(self, msg: dict[str, Any], sender: ContextRef) -> int | None:
        if sender.tab_id is not None:
            return sender.tab_id
        return _int_or_none(msg.get("tabId"))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Yield guard handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_yield_state_changed(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        self.coordinator.observe(sender.tab_id, msg.get("state"))
        return {"ok": True}

    async def _on_content_ready(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        tab_id = sender.tab_id
        if tab_id is not None:
            shadow = self.coordinator.shadow_state(tab_id)
            if shadow is not None and shadow.yielding:
                self._spawn(self.coordinator.reapply_after_navigation(tab_id))
        return {"status": "ok", "timestamp": now_ms()}

    async def _on_ui_get_yield_state(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        tab_id = self._tab_for(msg, sender)
        if tab_id is None:
            return {"ok": False, "error": "No active tab"}
        outcome = await self.coordinator.query_yield(tab_id)
        return {**outcome.to_dict(), "tabId": tab_id}

    async def _on_ui_set_yield_state(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        tab_id = self._tab_for(msg, sender)
        if tab_id is None:
            return {"ok": False, "error": "No active tab"}
        reason = str(msg.get("reason") or "PREFERENCES")
        outcome = await self.coordinator.apply_yield(tab_id, bool(msg.get("enable")), reason)
        return {**outcome.to_dict(), "tabId": tab_id}

    # ─────────────────────────────────────────────────────────────────────────
    # Artifact handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_store_artifact(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        url = msg.get("url")
        if not isinstance(url, str) or not url.strip():
            return {"ok": False, "error": "Missing url"}
        try:
            data = await asyncio.to_thread(self._fetch, url)
        except HttpClientError as exc:
            _LOGGER.warning("store_artifact fetch_failed url=%s error=%s", url, exc)
            return {"ok": False, "error": str(exc)}
        ref = self.artifacts.put(data, source_url=url)
        _LOGGER.info("store_artifact id=%s bytes=%s chunks=%s", ref.id, ref.total_size, ref.total_chunks)
        return {"ok": True, "type": "init", **ref.to_dict()}

    async def _on_get_artifact_chunk(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        artifact_id = str(msg.get("requestId") or "")
        index = msg.get("chunkIndex")
        try:
            chunk = self.artifacts.get_chunk(artifact_id, index)  # type: ignore[arg-type]
        except BridgeError as exc:
            return {"ok": False, "error": str(exc.kind), "detail": str(exc)}
        return {
            "ok": True,
            "type": "chunk",
            "chunkIndex": index,
            "data": base64.b64encode(chunk).decode("ascii"),
        }

    async def _on_release_artifact(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        artifact_id = msg.get("requestId")
        if not artifact_id:
            return {"ok": False, "error": "Missing requestId"}
        return {"ok": True, "released": self.artifacts.release(str(artifact_id))}

    # ─────────────────────────────────────────────────────────────────────────
    # Resource URL handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_record_resource_url(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        tab_id = _int_or_none(msg.get("tabId"))
        resource_id = str(msg.get("resourceId") or "").strip()
        url = msg.get("url")
        if tab_id is None or tab_id < 0 or not resource_id or not isinstance(url, str) or not url:
            return {"ok": False, "error": "tabId, resourceId and url are required"}
        self.resource_urls.record(tab_id, resource_id, url)
        return {"ok": True}

    async def _on_lookup_resource_url(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        tab_id = self._tab_for(msg, sender)
        resource_id = str(msg.get("resourceId") or "").strip()
        if tab_id is None or not resource_id:
            return {"ok": False, "url": None, **self.capture.details(None)}
        url = self.resource_urls.lookup(tab_id, resource_id)
        return {"ok": True, "url": url, **self.capture.details(url)}

    async def _on_fetch_resource_text(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        url = msg.get("url")
        if not isinstance(url, str) or not url:
            return {"success": False, "error": "Missing url"}
        if not self.capture.allows_fetch(url):
            return {"success": False, "error": "URL not allowed"}
        try:
            resp = await asyncio.to_thread(self._fetch_text, url)
        except HttpClientError as exc:
            _LOGGER.warning("fetch_resource_text failed error=%s", exc)
            return {"success": False, "error": str(exc)}
        status = int(resp.get("status") or 0)
        body = str(resp.get("body") or "")
        if not 200 <= status < 300:
            return {"success": False, "error": f"HTTP {status}", "preview": body[:_PREVIEW_CHARS]}
        return {"success": True, "text": body}


__all__ = ["BackgroundContext"]
