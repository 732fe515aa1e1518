"""Background-side orchestration of the per-tab yield state.

The content script owns the authoritative state. The coordinator drives it
through the ConnectionSupervisor and keeps a shadow copy per tab, used only when
the content script cannot be reached and to re-impose YIELDING after navigation
(a fresh document always starts ACTIVE).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..config import BridgeConfig
from ..connection import ConnectionSupervisor
from ..errors import ErrorKind
from ..messages import GET_YIELD_STATE, SET_YIELD, TOGGLE_YIELD, ContextRef, message
from .state import YieldState

_LOGGER = logging.getLogger("sidebar_bridge.yield_guard.coordinator")

REAPPLY_AFTER_NAVIGATION = "REAPPLY_AFTER_NAVIGATION"


@dataclass(frozen=True)
class YieldOutcome:
    ok: bool
    state: YieldState | None = None
    error: ErrorKind | None = None
    detail: str | None = None
    source: str = "live"
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {
                "ok": True,
                "state": self.state.to_dict() if self.state else None,
                "source": self.source,
            }
        return {
            "ok": False,
            "error": str(self.error) if self.error else None,
            **({"detail": self.detail} if self.detail else {}),
        }


@dataclass(frozen=True)
class _Attempt:
    state: YieldState | None
    error: ErrorKind | None = None
    detail: str | None = None


class YieldCoordinator:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        *,
        config: BridgeConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._supervisor = supervisor
        self._cfg = config or BridgeConfig()
        self._sleep = sleep
        self._shadow: dict[int, YieldState] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Shadow state
    # ─────────────────────────────────────────────────────────────────────────

    def shadow_state(self, tab_id: int) -> YieldState | None:
        return self._shadow.get(int(tab_id))

    def shadow_tabs(self) -> dict[int, YieldState]:
        return dict(self._shadow)

    def observe(self, tab_id: int | None, raw_state: Any) -> YieldState | None:
        """Sync the shadow from a state reported by the tab (reply or broadcast)."""
        if tab_id is None:
            return None
        try:
            state = YieldState.from_dict(raw_state)
        except ValueError:
            return None
        self._shadow[int(tab_id)] = state
        return state

    def forget_tab(self, tab_id: int) -> None:
        self._shadow.pop(int(tab_id), None)

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    async def apply_yield(
        self,
        tab_id: int,
        enable: bool,
        reason: str,
        max_attempts: int | None = None,
    ) -> YieldOutcome:
        attempts = max(1, int(max_attempts if max_attempts is not None else self._cfg.apply_attempts))
        payload = message(SET_YIELD, enable=bool(enable), reason=reason)

        last = _Attempt(state=None, error=ErrorKind.EXHAUSTED, detail="no attempt made")
        for attempt in range(1, attempts + 1):
            last = await self._attempt(tab_id, payload)
            if last.state is not None:
                self._shadow[int(tab_id)] = last.state
                return YieldOutcome(ok=True, state=last.state, attempts=attempt)
            _LOGGER.debug(
                "apply_yield attempt_failed tab=%s attempt=%s/%s error=%s", tab_id, attempt, attempts, last.error
            )
            # A freshly navigated page may still be initializing.
            await self._sleep(self._cfg.apply_retry_delay_s)

        _LOGGER.warning(
            "apply_yield exhausted tab=%s enable=%s reason=%s attempts=%s error=%s",
            tab_id,
            bool(enable),
            reason,
            attempts,
            last.error,
        )
        return YieldOutcome(ok=False, error=last.error, detail=last.detail, attempts=attempts)

    async def query_yield(self, tab_id: int) -> YieldOutcome:
        live = await self._attempt(tab_id, message(GET_YIELD_STATE))
        if live.state is not None:
            self._shadow[int(tab_id)] = live.state
            return YieldOutcome(ok=True, state=live.state, attempts=1)

        shadow = self._shadow.get(int(tab_id))
        fallback = YieldState.shadow(bool(shadow and shadow.yielding))
        _LOGGER.debug("query_yield shadow_fallback tab=%s state=%s error=%s", tab_id, fallback.state, live.error)
        return YieldOutcome(ok=True, state=fallback, source="shadow", detail=live.detail, attempts=1)

    async def toggle_yield(self, tab_id: int, reason: str = "COMMAND") -> YieldOutcome:
        result = await self._attempt(tab_id, message(TOGGLE_YIELD, reason=reason))
        if result.state is None:
            _LOGGER.warning("toggle_yield failed tab=%s error=%s", tab_id, result.error)
            return YieldOutcome(ok=False, error=result.error, detail=result.detail, attempts=1)
        self._shadow[int(tab_id)] = result.state
        _LOGGER.info("toggle_yield tab=%s state=%s", tab_id, result.state.state)
        return YieldOutcome(ok=True, state=result.state, attempts=1)

    async def reapply_after_navigation(self, tab_id: int) -> YieldOutcome | None:
        shadow = self._shadow.get(int(tab_id))
        if shadow is None or not shadow.yielding:
            return None
        outcome = await self.apply_yield(tab_id, True, REAPPLY_AFTER_NAVIGATION)
        if outcome.ok:
            _LOGGER.info("reapply_after_navigation tab=%s state=%s", tab_id, outcome.state.state if outcome.state else None)
        else:
            _LOGGER.warning("reapply_after_navigation failed tab=%s error=%s", tab_id, outcome.error)
        return outcome

    async def _attempt(self, tab_id: int, payload: dict[str, Any]) -> _Attempt:
        result = await self._supervisor.send_with_recovery(ContextRef.content(tab_id), payload)
        if not result.ok:
            return _Attempt(state=None, error=result.error, detail=result.detail)

        resp = result.response
        if not isinstance(resp, dict) or resp.get("success") is not True:
            detail = resp.get("error") if isinstance(resp, dict) else None
            return _Attempt(state=None, error=ErrorKind.EXHAUSTED, detail=str(detail or "Failed to apply state"))
        try:
            return _Attempt(state=YieldState.from_dict(resp.get("state")))
        except ValueError as exc:
            return _Attempt(state=None, error=ErrorKind.EXHAUSTED, detail=f"malformed state: {exc}")


__all__ = ["REAPPLY_AFTER_NAVIGATION", "YieldCoordinator", "YieldOutcome"]
