"""Pure ACTIVE/YIELDING state machine and the YieldState value object.

No DOM, no messaging: the controller applies side effects for transitions whose
``changed`` flag is set.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class YieldPhase(str, Enum):
    ACTIVE = "ACTIVE"
    YIELDING = "YIELDING"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class YieldState:
    state: YieldPhase = YieldPhase.ACTIVE
    ready: bool = False
    frame_present: bool = False
    sidebar_visible: bool = False

    @property
    def yielding(self) -> bool:
        return self.state is YieldPhase.YIELDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "ready": self.ready,
            "framePresent": self.frame_present,
            "sidebarVisible": self.sidebar_visible,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> YieldState:
        """Strict parse of a wire state; raises ValueError when malformed."""
        if not isinstance(raw, dict):
            raise ValueError("yield state must be an object")
        try:
            phase = YieldPhase(raw.get("state"))
        except ValueError as exc:
            raise ValueError(f"unknown yield state: {raw.get('state')!r}") from exc
        return cls(
            state=phase,
            ready=bool(raw.get("ready", False)),
            frame_present=bool(raw.get("framePresent", False)),
            sidebar_visible=bool(raw.get("sidebarVisible", False)),
        )

    @classmethod
    def shadow(cls, yielding: bool) -> YieldState:
        return cls(state=YieldPhase.YIELDING if yielding else YieldPhase.ACTIVE)


@dataclass(frozen=True)
class Transition:
    previous: YieldPhase
    current: YieldPhase
    reason: str

    @property
    def changed(self) -> bool:
        return self.previous is not self.current


class YieldStateMachine:
    def __init__(self, initial: YieldPhase = YieldPhase.ACTIVE) -> None:
        self._phase = YieldPhase(initial)
        self.last_reason: str | None = None

    @property
    def phase(self) -> YieldPhase:
        return self._phase

    @property
    def yielding(self) -> bool:
        return self._phase is YieldPhase.YIELDING

    def suspend(self, reason: str = "unknown") -> Transition:
        return self._move(YieldPhase.YIELDING, reason)

    def resume(self, reason: str = "unknown") -> Transition:
        return self._move(YieldPhase.ACTIVE, reason)

    def toggle(self, reason: str = "manual") -> Transition:
        return self.resume(reason) if self.yielding else self.suspend(reason)

    def set(self, enable: bool | None, reason: str = "unknown") -> Transition:
        if enable is None:
            return self.toggle(reason)
        return self.suspend(reason) if enable else self.resume(reason)

    def _move(self, target: YieldPhase, reason: str) -> Transition:
        t = Transition(previous=self._phase, current=target, reason=str(reason or "unknown"))
        if t.changed:
            self._phase = target
            self.last_reason = t.reason
        return t


__all__ = ["Transition", "YieldPhase", "YieldState", "YieldStateMachine"]
