from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from .errors import ArtifactTransferError, BridgeError
from .event_bus import EventBus
from .messages import GET_ARTIFACT_CHUNK, RELEASE_ARTIFACT, STORE_ARTIFACT, ContextRef, message

_LOGGER = logging.getLogger("sidebar_bridge.artifact_reader")

Progress = Callable[[int, int], None]


class ArtifactReader:
    """Consumer side of the chunked artifact protocol.

    Asks the background to fetch and store a blob, pulls it back chunk by chunk
    in index order and always releases the entry, even when a chunk fails.
    """

    def __init__(self, bus: EventBus, origin: ContextRef, *, timeout: float | None = None) -> None:
        self._bus = bus
        self._origin = origin
        self._timeout = timeout

    async def _call(self, msg: dict[str, Any]) -> dict[str, Any]:
        reply = await self._bus.request(ContextRef.background(), msg, sender=self._origin, timeout=self._timeout)
        if not isinstance(reply, dict):
            raise ArtifactTransferError(f"malformed reply to {msg.get('type')}")
        return reply

    async def download(self, url: str, *, on_progress: Progress | None = None) -> bytes:
        init = await self._call(message(STORE_ARTIFACT, url=url))
        if not init.get("ok"):
            raise ArtifactTransferError(f"store failed: {init.get('error') or 'unknown error'}")

        request_id = str(init.get("requestId") or "")
        try:
            total_size = int(init["totalSize"])
            chunk_size = int(init["chunkSize"])
            total_chunks = int(init["totalChunks"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ArtifactTransferError(f"malformed init reply: {exc}") from exc

        try:
            buf = bytearray(total_size)
            received = 0
            for index in range(total_chunks):
                reply = await self._call(message(GET_ARTIFACT_CHUNK, requestId=request_id, chunkIndex=index))
                if not reply.get("ok"):
                    raise ArtifactTransferError(f"chunk {index} failed: {reply.get('error')}")
                try:
                    data = base64.b64decode(str(reply.get("data") or ""), validate=True)
                except (binascii.Error, ValueError) as exc:
                    raise ArtifactTransferError(f"chunk {index} is not valid base64") from exc

                start = index * chunk_size
                expected = min(chunk_size, total_size - start)
                if len(data) != expected:
                    raise ArtifactTransferError(f"chunk {index} has {len(data)} bytes, expected {expected}")
                buf[start : start + len(data)] = data
                received += len(data)
                if on_progress is not None:
                    on_progress(index + 1, total_chunks)

            if received != total_size:
                raise ArtifactTransferError(f"received {received} of {total_size} bytes")
            return bytes(buf)
        finally:
            with suppress(BridgeError):
                await self._call(message(RELEASE_ARTIFACT, requestId=request_id))
            _LOGGER.debug("artifact_reader released id=%s", request_id)


__all__ = ["ArtifactReader"]
