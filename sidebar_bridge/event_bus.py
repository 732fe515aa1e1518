"""Explicit cross-context Event Bus.

Contexts never share memory: every payload is deep-copied on the way in and on
the way out, the same way a structured clone crosses the extension messaging
boundary. The bus offers exactly two verbs:

- ``request``: deliver to one context and await its reply.
- ``broadcast``: fire-and-forget; delivered in send order to each receiver.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from .errors import BridgeError, ReceivingEndMissing, RemoteHandlerError, RequestTimeout
from .messages import ContextKind, ContextRef, message_type

_LOGGER = logging.getLogger("sidebar_bridge.event_bus")

Handler = Callable[[dict[str, Any], ContextRef], Any]


class EventBus(Protocol):
    def register(self, ref: ContextRef, handler: Handler) -> None: ...

    def unregister(self, ref: ContextRef) -> None: ...

    async def request(
        self,
        target: ContextRef,
        msg: dict[str, Any],
        *,
        sender: ContextRef,
        timeout: float | None = None,
    ) -> Any: ...

    def broadcast(
        self,
        msg: dict[str, Any],
        *,
        sender: ContextRef,
        to: ContextRef | None = None,
    ) -> None: ...


class LocalEventBus:
    """In-process bus: one handler per registered context."""

    def __init__(self, *, default_timeout: float = 10.0) -> None:
        self.default_timeout = float(default_timeout)
        self._endpoints: dict[ContextRef, Handler] = {}
        # target -> tail of its delivery chain (keeps per-receiver order)
        self._tails: dict[ContextRef, asyncio.Task] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Endpoints
    # ─────────────────────────────────────────────────────────────────────────

    def register(self, ref: ContextRef, handler: Handler) -> None:
        if ref in self._endpoints:
            _LOGGER.debug("event_bus replace endpoint=%s", ref)
        self._endpoints[ref] = handler

    def unregister(self, ref: ContextRef) -> None:
        self._endpoints.pop(ref, None)

    def is_registered(self, ref: ContextRef) -> bool:
        return ref in self._endpoints

    def endpoints(self) -> list[ContextRef]:
        return list(self._endpoints)

    # ─────────────────────────────────────────────────────────────────────────
    # Delivery
    # ─────────────────────────────────────────────────────────────────────────

    async def request(
        self,
        target: ContextRef,
        msg: dict[str, Any],
        *,
        sender: ContextRef,
        timeout: float | None = None,
    ) -> Any:
        handler = self._endpoints.get(target)
        if handler is None:
            raise ReceivingEndMissing(f"Receiving end does not exist: {target}")

        limit = self.default_timeout if timeout is None else max(0.0, float(timeout))
        kind = message_type(msg)
        try:
            result = handler(copy.deepcopy(msg), sender)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=limit)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(f"{kind or 'request'} to {target} timed out after {limit:.2f}s") from exc
        except BridgeError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise RemoteHandlerError(f"{kind or 'request'} failed in {target}: {exc}") from exc
        return copy.deepcopy(result)

    def broadcast(
        self,
        msg: dict[str, Any],
        *,
        sender: ContextRef,
        to: ContextRef | None = None,
    ) -> None:
        targets = [to] if to is not None else self._broadcast_targets(sender)
        loop = asyncio.get_running_loop()
        for target in targets:
            handler = self._endpoints.get(target)
            if handler is None:
                continue
            prev = self._tails.get(target)
            task = loop.create_task(self._deliver(target, handler, copy.deepcopy(msg), sender, prev))
            self._tails[target] = task
            task.add_done_callback(lambda t, ref=target: self._forget_tail(ref, t))

    async def drain(self) -> None:
        """Wait until every queued broadcast has been delivered."""
        while self._tails:
            await asyncio.gather(*list(self._tails.values()), return_exceptions=True)

    def _broadcast_targets(self, sender: ContextRef) -> Iterable[ContextRef]:
        # A broadcast reaches the background and the sender's own tab, never other tabs.
        out: list[ContextRef] = []
        for ref in self._endpoints:
            if ref == sender:
                continue
            if ref.kind is ContextKind.BACKGROUND or (sender.tab_id is not None and ref.tab_id == sender.tab_id):
                out.append(ref)
        return out

    def _forget_tail(self, ref: ContextRef, task: asyncio.Task) -> None:
        if self._tails.get(ref) is task:
            self._tails.pop(ref, None)

    async def _deliver(
        self,
        target: ContextRef,
        handler: Handler,
        msg: dict[str, Any],
        sender: ContextRef,
        prev: asyncio.Task | None,
    ) -> None:
        if prev is not None and not prev.done():
            await asyncio.wait([prev])
        try:
            result = handler(msg, sender)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("event_bus broadcast_failed type=%s target=%s error=%s", message_type(msg), target, exc)


__all__ = ["EventBus", "Handler", "LocalEventBus"]
