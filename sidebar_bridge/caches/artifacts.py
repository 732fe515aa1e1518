"""Chunked in-memory artifact cache for large binary payloads.

Design goals:
- The messaging transport has a practical payload ceiling, so blobs are paged out
  in fixed-size chunks; the chunk size is pinned per entry at insert time.
- Bounded memory: LRU eviction (by last access) on entry count and on aggregate
  bytes, but a lone entry is never evicted for size alone.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..errors import ArtifactNotFound, InvalidChunkRange

_LOGGER = logging.getLogger("sidebar_bridge.caches.artifacts")


@dataclass
class ArtifactEntry:
    id: str
    data: bytes
    total_size: int
    chunk_size: int
    created_at: float
    last_accessed_at: float
    source_url: str | None = None

    @property
    def total_chunks(self) -> int:
        return math.ceil(self.total_size / self.chunk_size) if self.total_size else 0


@dataclass(frozen=True)
class ArtifactRef:
    id: str
    total_size: int
    chunk_size: int
    total_chunks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.id,
            "totalSize": self.total_size,
            "chunkSize": self.chunk_size,
            "totalChunks": self.total_chunks,
        }


class ArtifactCache:
    def __init__(
        self,
        *,
        chunk_size: int = 4 * 1024 * 1024,
        max_entries: int = 5,
        max_bytes: int = 256 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = int(chunk_size)
        self.max_entries = max(1, int(max_entries))
        self.max_bytes = max(1, int(max_bytes))
        self._clock = clock
        # Ordered least-recently-used first.
        self._entries: OrderedDict[str, ArtifactEntry] = OrderedDict()
        self._total_bytes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, artifact_id: object) -> bool:
        return artifact_id in self._entries

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def ids(self) -> list[str]:
        """Resident ids, least recently used first."""
        return list(self._entries)

    def put(self, data: bytes, *, source_url: str | None = None) -> ArtifactRef:
        blob = bytes(data)
        now = self._clock()
        artifact_id = uuid.uuid4().hex
        entry = ArtifactEntry(
            id=artifact_id,
            data=blob,
            total_size=len(blob),
            chunk_size=self.chunk_size,
            created_at=now,
            last_accessed_at=now,
            source_url=source_url,
        )
        self._entries[artifact_id] = entry
        self._total_bytes += entry.total_size
        self._evict_if_needed()
        return ArtifactRef(
            id=artifact_id,
            total_size=entry.total_size,
            chunk_size=entry.chunk_size,
            total_chunks=entry.total_chunks,
        )

    def get_chunk(self, artifact_id: str, index: int) -> bytes:
        entry = self._touch(artifact_id)
        if entry is None:
            raise ArtifactNotFound(f"artifact not found: {artifact_id}")
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidChunkRange(f"chunk index must be an integer: {index!r}")

        start = index * entry.chunk_size
        end = min(start + entry.chunk_size, entry.total_size)
        if start < 0 or start >= entry.total_size or end <= start:
            raise InvalidChunkRange(f"invalid chunk range: index={index} total_size={entry.total_size}")
        return entry.data[start:end]

    def describe(self, artifact_id: str) -> ArtifactRef:
        entry = self._entries.get(artifact_id)
        if entry is None:
            raise ArtifactNotFound(f"artifact not found: {artifact_id}")
        return ArtifactRef(
            id=entry.id,
            total_size=entry.total_size,
            chunk_size=entry.chunk_size,
            total_chunks=entry.total_chunks,
        )

    def release(self, artifact_id: str) -> bool:
        entry = self._entries.pop(artifact_id, None)
        if entry is None:
            return False
        self._total_bytes -= entry.total_size
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._total_bytes = 0

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "totalBytes": self._total_bytes,
            "maxEntries": self.max_entries,
            "maxBytes": self.max_bytes,
            "chunkSize": self.chunk_size,
        }

    def _touch(self, artifact_id: str) -> ArtifactEntry | None:
        entry = self._entries.get(artifact_id)
        if entry is None:
            return None
        entry.last_accessed_at = self._clock()
        self._entries.move_to_end(artifact_id)
        return entry

    def _evict_if_needed(self) -> None:
        while len(self._entries) > self.max_entries or (
            len(self._entries) > 1 and self._total_bytes > self.max_bytes
        ):
            oldest_id, oldest = self._entries.popitem(last=False)
            self._total_bytes -= oldest.total_size
            _LOGGER.debug(
                "artifact_cache evict id=%s bytes=%s entries=%s total=%s",
                oldest_id,
                oldest.total_size,
                len(self._entries),
                self._total_bytes,
            )


__all__ = ["ArtifactCache", "ArtifactEntry", "ArtifactRef"]
