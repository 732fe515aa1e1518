from __future__ import annotations

import pytest

from sidebar_bridge.caches import ArtifactCache
from sidebar_bridge.errors import ArtifactNotFound, ErrorKind, InvalidChunkRange


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_put_pages_blob_into_fixed_chunks() -> None:
    cache = ArtifactCache(chunk_size=4)
    ref = cache.put(b"0123456789", source_url="https://example.com/a.pdf")

    assert ref.total_size == 10
    assert ref.chunk_size == 4
    assert ref.total_chunks == 3
    assert ref.to_dict() == {"requestId": ref.id, "totalSize": 10, "chunkSize": 4, "totalChunks": 3}

    chunks = [cache.get_chunk(ref.id, i) for i in range(ref.total_chunks)]
    assert chunks == [b"0123", b"4567", b"89"]
    assert b"".join(chunks) == b"0123456789"


def test_each_put_gets_a_fresh_id() -> None:
    cache = ArtifactCache(chunk_size=4)
    a = cache.put(b"same")
    b = cache.put(b"same")
    assert a.id != b.id
    assert len(cache) == 2


def test_get_chunk_errors() -> None:
    cache = ArtifactCache(chunk_size=4)
    ref = cache.put(b"0123456789")

    with pytest.raises(ArtifactNotFound) as missing:
        cache.get_chunk("nope", 0)
    assert missing.value.kind is ErrorKind.NOT_FOUND

    for bad in (-1, 3, 100):
        with pytest.raises(InvalidChunkRange) as bad_range:
            cache.get_chunk(ref.id, bad)
        assert bad_range.value.kind is ErrorKind.INVALID_RANGE


def test_empty_blob_has_no_chunks() -> None:
    cache = ArtifactCache(chunk_size=4)
    ref = cache.put(b"")
    assert ref.total_chunks == 0
    with pytest.raises(InvalidChunkRange):
        cache.get_chunk(ref.id, 0)


def test_count_eviction_drops_least_recently_accessed() -> None:
    clock = _Clock()
    cache = ArtifactCache(chunk_size=4, max_entries=2, clock=clock)
    a = cache.put(b"aaaa")
    clock.now += 1
    b = cache.put(b"bbbb")
    clock.now += 1
    cache.get_chunk(a.id, 0)
    clock.now += 1
    c = cache.put(b"cccc")

    assert a.id in cache
    assert b.id not in cache
    assert c.id in cache
    assert cache.ids() == [a.id, c.id]


def test_out_of_range_read_still_refreshes_recency() -> None:
    cache = ArtifactCache(chunk_size=4, max_entries=2)
    a = cache.put(b"aaaa")
    b = cache.put(b"bbbb")
    with pytest.raises(InvalidChunkRange):
        cache.get_chunk(a.id, 99)
    cache.put(b"cccc")

    assert a.id in cache
    assert b.id not in cache


def test_byte_eviction_keeps_total_under_ceiling() -> None:
    cache = ArtifactCache(chunk_size=4, max_entries=10, max_bytes=10)
    a = cache.put(b"x" * 6)
    b = cache.put(b"y" * 6)

    assert a.id not in cache
    assert b.id in cache
    assert cache.total_bytes == 6


def test_byte_eviction_drops_least_recently_read_not_largest_or_newest() -> None:
    cache = ArtifactCache(chunk_size=4, max_entries=10, max_bytes=10)
    big = cache.put(b"b" * 6)
    small = cache.put(b"s" * 2)
    assert cache.get_chunk(big.id, 0) == b"bbbb"

    fresh = cache.put(b"n" * 3)

    assert small.id not in cache
    assert big.id in cache
    assert fresh.id in cache
    assert cache.total_bytes == 9


def test_lone_entry_is_never_evicted_for_size() -> None:
    cache = ArtifactCache(chunk_size=4, max_entries=10, max_bytes=4)
    ref = cache.put(b"z" * 10)

    assert ref.id in cache
    assert cache.total_bytes == 10
    assert cache.get_chunk(ref.id, 2) == b"zz"


def test_release_and_stats() -> None:
    cache = ArtifactCache(chunk_size=4, max_entries=3, max_bytes=100)
    ref = cache.put(b"abcdef")
    assert cache.stats() == {"entries": 1, "totalBytes": 6, "maxEntries": 3, "maxBytes": 100, "chunkSize": 4}

    assert cache.release(ref.id) is True
    assert cache.release(ref.id) is False
    assert cache.total_bytes == 0
    with pytest.raises(ArtifactNotFound):
        cache.get_chunk(ref.id, 0)


def test_chunk_size_is_pinned_per_entry() -> None:
    cache = ArtifactCache(chunk_size=4)
    ref = cache.put(b"0123456789")
    cache.chunk_size = 8
    assert cache.describe(ref.id).chunk_size == 4
    assert cache.get_chunk(ref.id, 1) == b"4567"
