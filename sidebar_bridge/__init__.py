"""Cross-context resilience layer for a browser sidebar assistant.

Background, content script and UI frame run as independent asyncio endpoints
that only talk through the Event Bus (in-process or over the local WebSocket
gateway).
"""

from .background import BackgroundContext
from .config import BridgeConfig
from .connection import CallbackInjector, ConnectionSupervisor, SendResult
from .content_script import ContentScriptContext
from .errors import BridgeError, ErrorKind
from .event_bus import EventBus, LocalEventBus
from .messages import ContextKind, ContextRef
from .ui_frame import UIFrameContext

__all__ = [
    "BackgroundContext",
    "BridgeConfig",
    "BridgeError",
    "CallbackInjector",
    "ConnectionSupervisor",
    "ContentScriptContext",
    "ContextKind",
    "ContextRef",
    "ErrorKind",
    "EventBus",
    "LocalEventBus",
    "SendResult",
    "UIFrameContext",
]
