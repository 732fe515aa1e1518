"""Connection health + one-shot recovery between background and a page context.

The host can tear a page context down (navigation, crash, unload) without telling
anyone, so every important send is preceded by a liveness probe. If the probe
fails the controller code is re-injected once, given a fixed settle delay, and
probed again. Retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .config import BridgeConfig
from .errors import BridgeError, ErrorKind, RequestTimeout
from .event_bus import EventBus
from .messages import PING, PONG, ContextRef, message, now_ms

_LOGGER = logging.getLogger("sidebar_bridge.connection")


class ContextInjector(Protocol):
    async def inject(self, target: ContextRef) -> None: ...


class CallbackInjector:
    """Adapts a plain (async) callable to the injector protocol."""

    def __init__(self, fn: Callable[[ContextRef], Awaitable[None] | None]) -> None:
        self._fn = fn

    async def inject(self, target: ContextRef) -> None:
        res = self._fn(target)
        if res is not None:
            await res


@dataclass(frozen=True)
class SendResult:
    ok: bool
    response: Any = None
    error: ErrorKind | None = None
    detail: str | None = None

    @classmethod
    def failure(cls, error: ErrorKind, detail: str | None = None) -> SendResult:
        return cls(ok=False, error=error, detail=detail)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "response": self.response}
        return {
            "ok": False,
            "error": str(self.error) if self.error else None,
            **({"detail": self.detail} if self.detail else {}),
        }


class ConnectionSupervisor:
    def __init__(
        self,
        bus: EventBus,
        injector: ContextInjector | None,
        *,
        config: BridgeConfig | None = None,
        origin: ContextRef | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._bus = bus
        self._injector = injector
        self._cfg = config or BridgeConfig()
        self._origin = origin or ContextRef.background()
        self._sleep = sleep

    async def is_reachable(self, target: ContextRef) -> bool:
        nonce = uuid.uuid4().hex
        probe = message(PING, nonce=nonce, timestamp=now_ms())
        try:
            reply = await self._bus.request(
                target,
                probe,
                sender=self._origin,
                timeout=self._cfg.probe_timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("probe_failed target=%s error=%s", target, exc)
            return False
        if not isinstance(reply, dict) or reply.get("type") != PONG:
            _LOGGER.debug("probe_mismatch target=%s reply=%r", target, reply)
            return False
        return reply.get("nonce") == nonce

    async def ensure_reachable(self, target: ContextRef) -> bool:
        if await self.is_reachable(target):
            return True
        if self._injector is None:
            return False

        _LOGGER.info("reinject target=%s", target)
        try:
            await self._injector.inject(target)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("reinject_failed target=%s error=%s", target, exc)
            return False

        await self._sleep(self._cfg.settle_delay_s)
        reachable = await self.is_reachable(target)
        if not reachable:
            _LOGGER.warning("reinject_unreachable target=%s", target)
        return reachable

    async def send_with_recovery(self, target: ContextRef, payload: dict[str, Any]) -> SendResult:
        if not await self.ensure_reachable(target):
            return SendResult.failure(ErrorKind.UNREACHABLE, f"context not connected: {target}")

        try:
            response = await self._bus.request(
                target,
                payload,
                sender=self._origin,
                timeout=self._cfg.request_timeout_s,
            )
        except RequestTimeout as exc:
            return SendResult.failure(ErrorKind.TIMEOUT, str(exc))
        except BridgeError as exc:
            return SendResult.failure(exc.kind, str(exc))
        except Exception as exc:  # noqa: BLE001
            return SendResult.failure(ErrorKind.UNREACHABLE, str(exc))
        return SendResult(ok=True, response=response)


__all__ = ["CallbackInjector", "ConnectionSupervisor", "ContextInjector", "SendResult"]
