from __future__ import annotations

import asyncio
from typing import Any

from sidebar_bridge.background import BackgroundContext
from sidebar_bridge.config import BridgeConfig
from sidebar_bridge.content_script import ContentScriptContext
from sidebar_bridge.event_bus import LocalEventBus
from sidebar_bridge.messages import FRAME_YIELD_STATE, YIELD_STATE_CHANGED, ContextRef
from sidebar_bridge.ui_frame import UIFrameContext
from sidebar_bridge.yield_guard import YieldState


class _Sleeps:
    async def __call__(self, delay: float) -> None:
        return None


async def _stack(tab_id: int = 7) -> tuple[LocalEventBus, BackgroundContext, ContentScriptContext, UIFrameContext]:
    bus = LocalEventBus()
    bg = BackgroundContext(bus, config=BridgeConfig(apply_attempts=2), sleep=_Sleeps())
    bg.attach()
    ui = UIFrameContext(bus, tab_id)
    ui.attach()
    content = ContentScriptContext(bus, tab_id)
    await content.start()
    return bus, bg, content, ui


def test_entering_yield_aborts_stream_and_blocks_sends() -> None:
    async def _main() -> Any:
        bus, bg, _content, ui = await _stack()
        stream = ui.start_stream(lambda: asyncio.sleep(10))
        assert stream is not None

        await bg.coordinator.apply_yield(7, True, "EXTERNAL")
        await bus.drain()
        await asyncio.gather(stream, return_exceptions=True)

        blocked = ui.start_stream(lambda: asyncio.sleep(10))
        return ui, stream, blocked

    ui, stream, blocked = asyncio.run(_main())
    assert stream.cancelled() is True
    assert ui.aborted_streams == 1
    assert ui.can_send() is False
    assert ui.notice_visible is True
    assert blocked is None


def test_resume_posts_state_to_frame() -> None:
    async def _main() -> UIFrameContext:
        bus, bg, _content, ui = await _stack()
        await bg.coordinator.apply_yield(7, True, "EXTERNAL")
        await bus.drain()
        await bg.coordinator.apply_yield(7, False, "EXTERNAL")
        await bus.drain()
        return ui

    ui = asyncio.run(_main())
    assert ui.can_send() is True
    assert ui.aborted_streams == 0


def test_last_write_wins() -> None:
    ui = UIFrameContext(LocalEventBus(), 1)
    sender = ContextRef.content(1)
    ui.handle({"type": YIELD_STATE_CHANGED, "state": YieldState.shadow(True).to_dict()}, sender)
    assert ui.can_send() is False
    ui.handle({"type": FRAME_YIELD_STATE, "state": YieldState.shadow(False).to_dict()}, sender)
    assert ui.can_send() is True
    ui.handle({"type": "SOMETHING_ELSE", "state": YieldState.shadow(True).to_dict()}, sender)
    assert ui.can_send() is True


def test_set_yield_through_background() -> None:
    async def _main() -> Any:
        _bus, _bg, content, ui = await _stack()
        reply = await ui.set_yield(True)
        return reply, ui, content

    reply, ui, content = asyncio.run(_main())
    assert reply["ok"] is True
    assert ui.state.yielding is True
    assert ui.last_error is None
    assert content.controller.yielding is True


def test_set_yield_failure_reports_and_resyncs() -> None:
    async def _main() -> Any:
        bus = LocalEventBus()
        bg = BackgroundContext(bus, config=BridgeConfig(apply_attempts=2), sleep=_Sleeps())
        bg.attach()
        ui = UIFrameContext(bus, 3)
        ui.attach()
        reply = await ui.set_yield(True)
        return reply, ui

    reply, ui = asyncio.run(_main())
    assert reply["ok"] is False
    assert reply["error"] == "Unreachable"
    assert ui.last_error == "Unreachable"
    assert ui.state.yielding is False


def test_refresh_falls_back_to_active_without_background() -> None:
    async def _main() -> UIFrameContext:
        ui = UIFrameContext(LocalEventBus(), 2)
        ui.apply_state(YieldState.shadow(True).to_dict())
        await ui.refresh_state()
        return ui

    ui = asyncio.run(_main())
    assert ui.state.yielding is False
