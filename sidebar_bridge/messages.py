"""Wire vocabulary of the cross-context Event Bus.

Every message is a plain JSON-compatible dict with a ``type`` key so the same
payload can cross the in-process bus and the WebSocket gateway unchanged.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

# Liveness
PING = "PING"
PONG = "PONG"

# Yield guard
SET_YIELD = "SET_YIELD"
TOGGLE_YIELD = "TOGGLE_YIELD"
GET_YIELD_STATE = "GET_YIELD_STATE"
YIELD_STATE_CHANGED = "YIELD_STATE_CHANGED"
FRAME_YIELD_STATE = "FRAME_YIELD_STATE"
CONTENT_READY = "CONTENT_READY"
UI_GET_YIELD_STATE = "UI_GET_YIELD_STATE"
UI_SET_YIELD_STATE = "UI_SET_YIELD_STATE"

# Artifacts
STORE_ARTIFACT = "STORE_ARTIFACT"
GET_ARTIFACT_CHUNK = "GET_ARTIFACT_CHUNK"
RELEASE_ARTIFACT = "RELEASE_ARTIFACT"

# Ephemeral resource URLs
RECORD_RESOURCE_URL = "RECORD_RESOURCE_URL"
LOOKUP_RESOURCE_URL = "LOOKUP_RESOURCE_URL"
FETCH_RESOURCE_TEXT = "FETCH_YOUTUBE_TIMEDTEXT"

# Fire-and-forget types: receivers never reply to these.
BROADCAST_TYPES = frozenset({YIELD_STATE_CHANGED, FRAME_YIELD_STATE})


class ContextKind(str, Enum):
    BACKGROUND = "background"
    CONTENT_SCRIPT = "content"
    UI_FRAME = "frame"


@dataclass(frozen=True)
class ContextRef:
    kind: ContextKind
    tab_id: int | None = None

    @classmethod
    def background(cls) -> ContextRef:
        return cls(ContextKind.BACKGROUND)

    @classmethod
    def content(cls, tab_id: int) -> ContextRef:
        return cls(ContextKind.CONTENT_SCRIPT, int(tab_id))

    @classmethod
    def frame(cls, tab_id: int) -> ContextRef:
        return cls(ContextKind.UI_FRAME, int(tab_id))

    def to_dict(self) -> dict[str, Any]:
        return {"context": self.kind.value, **({"tabId": self.tab_id} if self.tab_id is not None else {})}

    @classmethod
    def from_dict(cls, raw: Any) -> ContextRef:
        if not isinstance(raw, dict):
            raise ValueError("context reference must be an object")
        kind = ContextKind(str(raw.get("context") or ""))
        tab_raw = raw.get("tabId")
        if kind is ContextKind.BACKGROUND:
            return cls.background()
        if isinstance(tab_raw, bool) or not isinstance(tab_raw, int):
            raise ValueError(f"{kind.value} context requires an integer tabId")
        return cls(kind, tab_raw)

    def __str__(self) -> str:
        return self.kind.value if self.tab_id is None else f"{self.kind.value}:{self.tab_id}"


def now_ms() -> int:
    return int(time.time() * 1000)


def message(kind: str, **fields: Any) -> dict[str, Any]:
    return {"type": kind, **{k: v for k, v in fields.items() if v is not None}}


def message_type(msg: Any) -> str:
    if not isinstance(msg, dict):
        return ""
    return str(msg.get("type") or "")


__all__ = [
    "BROADCAST_TYPES",
    "CONTENT_READY",
    "FETCH_RESOURCE_TEXT",
    "FRAME_YIELD_STATE",
    "GET_ARTIFACT_CHUNK",
    "GET_YIELD_STATE",
    "LOOKUP_RESOURCE_URL",
    "PING",
    "PONG",
    "RECORD_RESOURCE_URL",
    "RELEASE_ARTIFACT",
    "SET_YIELD",
    "STORE_ARTIFACT",
    "TOGGLE_YIELD",
    "UI_GET_YIELD_STATE",
    "UI_SET_YIELD_STATE",
    "YIELD_STATE_CHANGED",
    "ContextKind",
    "ContextRef",
    "message",
    "message_type",
    "now_ms",
]
