"""Local WebSocket gateway that carries the Event Bus between processes.

Frames are JSON objects:

- ``hello`` / ``helloAck``: first exchange; the client names the context it hosts.
- ``request`` / ``response``: correlated by ``id``; errors travel as
  ``{"ok": false, "error": <ErrorKind>, "detail": ...}``.
- ``event``: fire-and-forget broadcast (optionally addressed with ``to``).

The gateway registers a proxy endpoint on the local bus for every connected
client and unregisters it on disconnect, so a dropped socket looks exactly like
a context the host tore down.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import json
import logging
import os
import time
from typing import Any

from .config import BridgeConfig
from .errors import (
    BridgeError,
    ErrorKind,
    ReceivingEndMissing,
    RemoteHandlerError,
    RequestTimeout,
    error_from_kind,
)
from .event_bus import Handler, LocalEventBus
from .messages import BROADCAST_TYPES, ContextKind, ContextRef, message_type, now_ms

_LOGGER = logging.getLogger("sidebar_bridge.gateway")

BRIDGE_PROTOCOL_VERSION = "2026-10-01"
HELLO_TIMEOUT_S = 2.5
MAX_FRAME_BYTES = 16_000_000


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The bridge gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


def _error_frame(req_id: Any, exc: Exception) -> dict[str, Any]:
    kind = exc.kind if isinstance(exc, BridgeError) else ErrorKind.UNREACHABLE
    return {"type": "response", "id": req_id, "ok": False, "error": str(kind), "detail": str(exc)}


async def _send_json(ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    await ws.send(json.dumps(payload, ensure_ascii=False))


class _Peer:
    """One connected remote context as seen by the gateway."""

    def __init__(self, ws, ref: ContextRef, session_id: str) -> None:  # type: ignore[no-untyped-def]
        self.ws = ws
        self.ref = ref
        self.session_id = session_id
        self.connected_at_ms = now_ms()
        self._ids = itertools.count(1)
        self.pending: dict[int, asyncio.Future] = {}

    async def proxy(self, msg: dict[str, Any], sender: ContextRef) -> Any:
        if message_type(msg) in BROADCAST_TYPES:
            await _send_json(self.ws, {"type": "event", "sender": sender.to_dict(), "message": msg})
            return None

        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self.pending[req_id] = fut
        try:
            await _send_json(self.ws, {"type": "request", "id": req_id, "sender": sender.to_dict(), "message": msg})
            return await fut
        finally:
            self.pending.pop(req_id, None)

    def resolve(self, frame: dict[str, Any]) -> None:
        try:
            req_id = int(frame.get("id"))  # type: ignore[arg-type]
        except Exception:
            return
        fut = self.pending.get(req_id)
        if fut is None or fut.done():
            return
        if frame.get("ok"):
            fut.set_result(frame.get("result"))
        else:
            fut.set_exception(error_from_kind(frame.get("error"), frame.get("detail")))

    def fail_pending(self) -> None:
        pending = list(self.pending.values())
        self.pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ReceivingEndMissing(f"{self.ref} disconnected"))


class BridgeGateway:
    def __init__(
        self,
        bus: LocalEventBus,
        *,
        host: str | None = None,
        port: int | None = None,
        config: BridgeConfig | None = None,
    ) -> None:
        cfg = config or BridgeConfig()
        self.bus = bus
        self.host = host or cfg.gateway_host
        self.port = int(cfg.gateway_port if port is None else port)
        self._server: Any | None = None
        self._peers: dict[ContextRef, _Peer] = {}
        self._tasks: set[asyncio.Task] = set()
        self._started_at_ms = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> int:
        if self._server is not None:
            return self.port
        websockets = _import_websockets()
        self._server = await websockets.serve(
            self._handler,
            self.host,
            self.port,
            max_size=MAX_FRAME_BYTES,
            ping_interval=None,
        )
        with contextlib.suppress(Exception):
            self.port = int(next(iter(self._server.sockets)).getsockname()[1])
        self._started_at_ms = now_ms()
        _LOGGER.info("gateway listening host=%s port=%s", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        for peer in list(self._peers.values()):
            with contextlib.suppress(Exception):
                await peer.ws.close()
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def status(self) -> dict[str, Any]:
        return {
            "listening": self._server is not None,
            "host": self.host,
            "port": self.port,
            "startedAtMs": self._started_at_ms or None,
            "peers": [
                {"context": str(ref), "sessionId": peer.session_id, "connectedAtMs": peer.connected_at_ms}
                for ref, peer in self._peers.items()
            ],
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handling
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=HELLO_TIMEOUT_S)
            hello = json.loads(raw)
        except Exception:
            _LOGGER.warning("gateway hello_timeout")
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return

        if not isinstance(hello, dict) or hello.get("type") != "hello":
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return
        try:
            ref = ContextRef.from_dict(hello)
        except ValueError as exc:
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason=str(exc)[:100])
            return
        if ref.kind is ContextKind.BACKGROUND:
            # The background lives in the gateway process.
            with contextlib.suppress(Exception):
                await ws.close(code=1008, reason="background context is local")
            return

        peer = _Peer(ws, ref, f"ctx-{int(time.time() * 1000)}-{os.getpid()}")
        previous = self._peers.get(ref)
        if previous is not None:
            previous.fail_pending()
        self._peers[ref] = peer
        self.bus.register(ref, peer.proxy)

        try:
            await _send_json(
                ws,
                {
                    "type": "helloAck",
                    "protocolVersion": BRIDGE_PROTOCOL_VERSION,
                    "sessionId": peer.session_id,
                    **ref.to_dict(),
                },
            )
            _LOGGER.info("gateway peer_connected context=%s", ref)
            async for raw_msg in ws:
                try:
                    frame = json.loads(raw_msg)
                except Exception:
                    continue
                if isinstance(frame, dict):
                    self._on_frame(peer, frame)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("gateway peer_error context=%s error=%s", ref, exc)
        finally:
            self._disconnect(peer)

    def _disconnect(self, peer: _Peer) -> None:
        if self._peers.get(peer.ref) is peer:
            self._peers.pop(peer.ref, None)
            self.bus.unregister(peer.ref)
            _LOGGER.info("gateway peer_disconnected context=%s", peer.ref)
        peer.fail_pending()

    def _on_frame(self, peer: _Peer, frame: dict[str, Any]) -> None:
        ftype = frame.get("type")
        if ftype == "response":
            peer.resolve(frame)
            return
        if ftype == "request":
            self._spawn(self._serve_request(peer, frame))
            return
        if ftype == "event":
            msg = frame.get("message")
            if not isinstance(msg, dict):
                return
            to = None
            if frame.get("to") is not None:
                try:
                    to = ContextRef.from_dict(frame.get("to"))
                except ValueError:
                    return
            self.bus.broadcast(msg, sender=peer.ref, to=to)

    async def _serve_request(self, peer: _Peer, frame: dict[str, Any]) -> None:
        req_id = frame.get("id")
        try:
            target = ContextRef.from_dict(frame.get("target") or ContextRef.background().to_dict())
            msg = frame.get("message")
            if not isinstance(msg, dict):
                raise RemoteHandlerError("request frame without message")
            timeout = frame.get("timeout")
            result = await self.bus.request(
                target,
                msg,
                sender=peer.ref,
                timeout=float(timeout) if isinstance(timeout, (int, float)) else None,
            )
            reply = {"type": "response", "id": req_id, "ok": True, "result": result}
        except Exception as exc:  # noqa: BLE001
            reply = _error_frame(req_id, exc)
        with contextlib.suppress(Exception):
            await _send_json(peer.ws, reply)

    def _spawn(self, coro) -> None:  # type: ignore[no-untyped-def]
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class GatewayClient:
    """Remote side of the gateway: hosts one context and acts as its Event Bus.

    Implements the same ``register`` / ``request`` / ``broadcast`` surface as the
    in-process bus, so a content script or UI frame runs unchanged in another
    process.
    """

    def __init__(self, url: str, ref: ContextRef, *, open_timeout: float = 5.0) -> None:
        self.url = url
        self.ref = ref
        self.session_id: str | None = None
        self._open_timeout = float(open_timeout)
        self._ws: Any | None = None
        self._handler: Handler | None = None
        self._reader: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Bus surface
    # ─────────────────────────────────────────────────────────────────────────

    def register(self, ref: ContextRef, handler: Handler) -> None:
        if ref != self.ref:
            raise ValueError(f"this client hosts {self.ref}, not {ref}")
        self._handler = handler

    def unregister(self, ref: ContextRef) -> None:
        if ref == self.ref:
            self._handler = None

    async def request(
        self,
        target: ContextRef,
        msg: dict[str, Any],
        *,
        sender: ContextRef | None = None,
        timeout: float | None = None,
    ) -> Any:
        ws = self._ws
        if ws is None:
            raise ReceivingEndMissing("gateway not connected")
        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        frame: dict[str, Any] = {"type": "request", "id": req_id, "target": target.to_dict(), "message": msg}
        if timeout is not None:
            frame["timeout"] = float(timeout)
        try:
            try:
                await _send_json(ws, frame)
            except Exception as exc:  # noqa: BLE001
                raise ReceivingEndMissing(f"gateway send failed: {exc}") from exc
            if timeout is None:
                return await fut
            try:
                return await asyncio.wait_for(fut, timeout=float(timeout) + 1.0)
            except asyncio.TimeoutError as exc:
                raise RequestTimeout(f"{message_type(msg) or 'request'} to {target} timed out") from exc
        finally:
            self._pending.pop(req_id, None)

    def broadcast(self, msg: dict[str, Any], *, sender: ContextRef | None = None, to: ContextRef | None = None) -> None:
        ws = self._ws
        if ws is None:
            _LOGGER.debug("gateway_client drop_event type=%s (not connected)", message_type(msg))
            return
        frame: dict[str, Any] = {"type": "event", "message": msg}
        if to is not None:
            frame["to"] = to.to_dict()
        self._spawn(self._send_event(ws, frame))

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> dict[str, Any]:
        websockets = _import_websockets()
        ws = await websockets.connect(
            self.url,
            ping_interval=None,
            open_timeout=self._open_timeout,
            max_size=MAX_FRAME_BYTES,
        )
        try:
            await _send_json(ws, {"type": "hello", "protocolVersion": BRIDGE_PROTOCOL_VERSION, **self.ref.to_dict()})
            ack = json.loads(await asyncio.wait_for(ws.recv(), timeout=HELLO_TIMEOUT_S))
        except Exception:
            with contextlib.suppress(Exception):
                await ws.close()
            raise
        if not (isinstance(ack, dict) and ack.get("type") == "helloAck"):
            with contextlib.suppress(Exception):
                await ws.close()
            raise RemoteHandlerError(f"unexpected handshake reply: {ack!r}")

        self._ws = ws
        self.session_id = str(ack.get("sessionId") or "") or None
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))
        return ack

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        reader = self._reader
        self._reader = None
        if reader is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending()

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _read_loop(self, ws) -> None:  # type: ignore[no-untyped-def]
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except Exception:
                    continue
                if not isinstance(frame, dict):
                    continue
                ftype = frame.get("type")
                if ftype == "response":
                    self._resolve(frame)
                elif ftype == "request":
                    self._spawn(self._serve_request(ws, frame))
                elif ftype == "event":
                    # Handled inline to keep broadcast order.
                    await self._deliver_event(frame)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("gateway_client read_failed error=%s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending()

    async def _send_event(self, ws, frame: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        try:
            await _send_json(ws, frame)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("gateway_client event_send_failed type=%s error=%s", message_type(frame.get("message")), exc)

    async def _deliver_event(self, frame: dict[str, Any]) -> None:
        handler = self._handler
        msg = frame.get("message")
        if handler is None or not isinstance(msg, dict):
            return
        try:
            sender = ContextRef.from_dict(frame.get("sender"))
        except ValueError:
            sender = ContextRef.background()
        try:
            result = handler(msg, sender)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("gateway_client event_failed type=%s error=%s", message_type(msg), exc)

    async def _serve_request(self, ws, frame: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        req_id = frame.get("id")
        handler = self._handler
        try:
            if handler is None:
                raise ReceivingEndMissing(f"no handler registered for {self.ref}")
            sender = ContextRef.from_dict(frame.get("sender"))
            result = handler(frame.get("message") or {}, sender)
            if inspect.isawaitable(result):
                result = await result
            reply = {"type": "response", "id": req_id, "ok": True, "result": result}
        except Exception as exc:  # noqa: BLE001
            reply = _error_frame(req_id, exc)
        with contextlib.suppress(Exception):
            await _send_json(ws, reply)

    def _resolve(self, frame: dict[str, Any]) -> None:
        try:
            req_id = int(frame.get("id"))  # type: ignore[arg-type]
        except Exception:
            return
        fut = self._pending.get(req_id)
        if fut is None or fut.done():
            return
        if frame.get("ok"):
            fut.set_result(frame.get("result"))
        else:
            fut.set_exception(error_from_kind(frame.get("error"), frame.get("detail")))

    def _fail_pending(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ReceivingEndMissing("gateway connection closed"))

    def _spawn(self, coro) -> None:  # type: ignore[no-untyped-def]
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = ["BRIDGE_PROTOCOL_VERSION", "BridgeGateway", "GatewayClient"]
