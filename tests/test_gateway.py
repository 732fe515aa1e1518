from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from sidebar_bridge.background import BackgroundContext
from sidebar_bridge.config import BridgeConfig
from sidebar_bridge.content_script import ContentScriptContext
from sidebar_bridge.errors import ReceivingEndMissing
from sidebar_bridge.event_bus import LocalEventBus
from sidebar_bridge.messages import ContextRef


def _require_websockets():  # noqa: ANN202
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")
    return websockets


async def _wait_until(predicate, timeout: float = 2.0) -> bool:  # noqa: ANN001
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


def test_remote_content_script_round_trip() -> None:
    _require_websockets()
    from sidebar_bridge.gateway import GatewayClient

    async def _main() -> dict[str, Any]:
        bus = LocalEventBus()
        bg = BackgroundContext(bus, config=BridgeConfig(apply_attempts=2, apply_retry_delay_s=0.0, settle_delay_s=0.0))
        bg.attach()
        gw = await bg.start_gateway(host="127.0.0.1", port=0)
        ref = ContextRef.content(7)
        client = GatewayClient(f"ws://127.0.0.1:{gw.port}", ref)
        content = ContentScriptContext(client, 7)
        out: dict[str, Any] = {}
        try:
            ack = await client.connect()
            out["ack"] = ack
            out["announced"] = await content.start()
            out["registered"] = bus.is_registered(ref)

            outcome = await bg.coordinator.apply_yield(7, True, "EXTERNAL")
            out["apply"] = outcome.to_dict()
            out["remote_yielding"] = content.controller.yielding
            out["peers"] = len(bg.status()["gateway"]["peers"])
        finally:
            await client.close()

        out["unregistered"] = await _wait_until(lambda: not bus.is_registered(ref))
        fallback = await bg.coordinator.query_yield(7)
        out["fallback"] = fallback.to_dict()
        await bg.stop_gateway()
        return out

    out = asyncio.run(_main())
    assert out["ack"]["type"] == "helloAck"
    assert out["ack"]["tabId"] == 7
    assert out["announced"] is True
    assert out["registered"] is True
    assert out["apply"]["ok"] is True
    assert out["apply"]["state"]["state"] == "YIELDING"
    assert out["remote_yielding"] is True
    assert out["peers"] == 1
    assert out["unregistered"] is True
    assert out["fallback"]["source"] == "shadow"
    assert out["fallback"]["state"]["state"] == "YIELDING"


def test_gateway_rejects_bad_hello() -> None:
    websockets = _require_websockets()
    from sidebar_bridge.gateway import BridgeGateway

    async def _main() -> list[bool]:
        bus = LocalEventBus()
        gw = BridgeGateway(bus, host="127.0.0.1", port=0)
        await gw.start()
        closed: list[bool] = []
        try:
            for hello in ({"type": "nope"}, {"type": "hello", "context": "background"}):
                async with websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None) as ws:
                    await ws.send(json.dumps(hello))
                    try:
                        await asyncio.wait_for(ws.recv(), timeout=2.0)
                        closed.append(False)
                    except websockets.ConnectionClosed:
                        closed.append(True)
            assert bus.endpoints() == []
        finally:
            await gw.stop()
        return closed

    assert asyncio.run(_main()) == [True, True]


def test_client_request_without_connection_is_unreachable() -> None:
    from sidebar_bridge.gateway import GatewayClient

    async def _main() -> None:
        client = GatewayClient("ws://127.0.0.1:1", ContextRef.frame(1))
        with pytest.raises(ReceivingEndMissing):
            await client.request(ContextRef.background(), {"type": "UI_GET_YIELD_STATE"})

    asyncio.run(_main())


def test_client_hosts_a_single_context() -> None:
    from sidebar_bridge.gateway import GatewayClient

    client = GatewayClient("ws://127.0.0.1:1", ContextRef.frame(1))
    client.register(ContextRef.frame(1), lambda msg, sender: None)
    with pytest.raises(ValueError):
        client.register(ContextRef.frame(2), lambda msg, sender: None)


class _DroppedSocket:
    async def send(self, data: str) -> None:
        raise ConnectionResetError("socket dropped")


def test_client_send_failure_is_unreachable() -> None:
    from sidebar_bridge.gateway import GatewayClient

    async def _main() -> None:
        client = GatewayClient("ws://127.0.0.1:1", ContextRef.content(2))
        client._ws = _DroppedSocket()
        with pytest.raises(ReceivingEndMissing, match="send failed"):
            await client.request(ContextRef.background(), {"type": "CONTENT_READY"}, timeout=0.5)
        assert client._pending == {}

        client.broadcast({"type": "YIELD_STATE_CHANGED"})
        await client.drain()

    asyncio.run(_main())
