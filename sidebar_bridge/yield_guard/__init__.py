"""Yield guard: detach the embedded frame while an external debugger needs the page."""

from .controller import YieldController
from .coordinator import REAPPLY_AFTER_NAVIGATION, YieldCoordinator, YieldOutcome
from .frame_host import FrameHost
from .state import Transition, YieldPhase, YieldState, YieldStateMachine
from .watchdog import FrameWatchdog

__all__ = [
    "REAPPLY_AFTER_NAVIGATION",
    "FrameHost",
    "FrameWatchdog",
    "Transition",
    "YieldController",
    "YieldCoordinator",
    "YieldOutcome",
    "YieldPhase",
    "YieldState",
    "YieldStateMachine",
]
