from __future__ import annotations

import logging
from typing import Any

import pytest

from sidebar_bridge.messages import FRAME_YIELD_STATE, YIELD_STATE_CHANGED
from sidebar_bridge.yield_guard import FrameHost, FrameWatchdog, YieldController, YieldPhase


def _controller() -> tuple[FrameHost, YieldController, list[dict[str, Any]], list[dict[str, Any]]]:
    published: list[dict[str, Any]] = []
    posted: list[dict[str, Any]] = []
    host = FrameHost()
    ctl = YieldController(host, publish=published.append, post_to_frame=posted.append)
    return host, ctl, published, posted


def test_suspend_detaches_frame_and_resume_restores_exact_position() -> None:
    host, ctl, published, posted = _controller()
    host.mount()
    ctl.on_frame_mounted()
    # A sibling after the frame pins the slot we expect back.
    trailer = host.document.createElement("div")
    host.content.appendChild(trailer)
    before = host.frame_position()
    assert before is not None

    state = ctl.suspend("EXTERNAL")
    assert state.state is YieldPhase.YIELDING
    assert state.frame_present is False
    assert state.ready is True
    assert host.frame_connected is False
    assert host.anchor_connected is True
    assert host.placeholder_visible is True

    state = ctl.resume("EXTERNAL")
    assert state.state is YieldPhase.ACTIVE
    assert state.frame_present is True
    assert host.anchor_connected is False
    assert host.placeholder_visible is False
    assert host.frame_position() == before
    assert host.frame.nextSibling is trailer

    assert [m["type"] for m in published] == [YIELD_STATE_CHANGED, YIELD_STATE_CHANGED]
    assert [m["state"]["state"] for m in published] == ["YIELDING", "ACTIVE"]
    assert published[0]["reason"] == "EXTERNAL"
    # FRAME_READY on mount, then the post-resume resync.
    assert [m["type"] for m in posted] == [FRAME_YIELD_STATE, FRAME_YIELD_STATE]
    assert posted[-1]["state"]["state"] == "ACTIVE"


def test_idempotent_transitions_have_no_side_effects() -> None:
    host, ctl, published, _posted = _controller()
    host.mount()

    ctl.resume("NOOP")
    assert published == []

    ctl.suspend("A")
    ctl.suspend("B")
    assert len(published) == 1
    assert host.frame_connected is False


def test_yielding_before_mount_detaches_on_mount() -> None:
    host, ctl, published, posted = _controller()
    state = ctl.suspend("EARLY")
    assert state.ready is False
    assert len(published) == 1

    host.mount()
    assert host.frame_connected is True
    ctl.on_frame_mounted()
    assert host.frame_connected is False
    assert host.placeholder_visible is True
    # Frame is detached, nothing can be posted to it.
    assert posted == []

    ctl.resume("LATE")
    assert host.frame_connected is True
    assert host.frame.parentNode is host.content


def test_placeholder_button_resumes() -> None:
    host, ctl, _published, _posted = _controller()
    host.mount()
    ctl.suspend("EXTERNAL")
    host.request_resume()
    assert ctl.yielding is False
    assert ctl.machine.last_reason == "PLACEHOLDER_RESUME_BUTTON"
    assert host.frame_connected is True


def test_watchdog_restores_removed_container() -> None:
    host, ctl, _published, _posted = _controller()
    host.mount()
    dog = FrameWatchdog(ctl)

    assert dog.check() is None
    host.root.removeChild(host.container)
    assert host.container_connected is False

    assert dog.check() == "container_restored"
    assert host.container_connected is True
    assert host.frame_connected is True
    assert dog.heal_count == 1


def test_watchdog_restore_while_yielding_keeps_frame_detached() -> None:
    host, ctl, _published, _posted = _controller()
    host.mount()
    ctl.suspend("EXTERNAL")
    dog = FrameWatchdog(ctl)

    host.root.removeChild(host.container)
    assert dog.check() == "container_restored"
    assert host.container_connected is True
    assert host.frame_connected is False


def test_watchdog_redetaches_frame_reinserted_by_page() -> None:
    host, ctl, _published, _posted = _controller()
    host.mount()
    ctl.suspend("EXTERNAL")
    dog = FrameWatchdog(ctl)

    host.content.appendChild(host.frame)
    assert host.frame_connected is True

    assert dog.check() == "frame_redetached"
    assert host.frame_connected is False
    assert ctl.yielding is True

    # The anchor still marks the original slot.
    ctl.resume("EXTERNAL")
    assert host.frame.previousSibling is host.placeholder


def test_resume_appends_to_parent_when_anchor_was_removed() -> None:
    host, ctl, _published, _posted = _controller()
    host.mount()
    trailer = host.document.createElement("div")
    host.content.appendChild(trailer)

    ctl.suspend("EXTERNAL")
    host.content.removeChild(host.anchor)
    assert host.anchor_connected is False

    ctl.resume("EXTERNAL")
    assert host.frame_connected is True
    assert host.frame.parentNode is host.content
    assert host.frame is host.content.lastChild
    assert trailer.nextSibling is host.frame


def test_publish_failure_is_logged_and_state_still_changes(caplog: pytest.LogCaptureFixture) -> None:
    def _no_loop(msg: dict[str, Any]) -> None:
        raise RuntimeError("no running event loop")

    host = FrameHost()
    ctl = YieldController(host, publish=_no_loop)
    host.mount()

    with caplog.at_level(logging.DEBUG, logger="sidebar_bridge.yield_guard"):
        state = ctl.suspend("EXTERNAL")

    assert state.state is YieldPhase.YIELDING
    assert host.frame_connected is False
    assert any("publish_failed" in rec.getMessage() for rec in caplog.records)
