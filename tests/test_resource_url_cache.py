from __future__ import annotations

from sidebar_bridge.caches import EphemeralUrlCache, ResourceUrlCapture


class _Clock:
    def __init__(self, now: float = 5000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


SIGNED = "https://www.youtube.com/api/timedtext?v=abc123&lang=en&caps=asr&signature=XYZ"


def test_lookup_is_valid_through_ttl_inclusive() -> None:
    clock = _Clock()
    cache = EphemeralUrlCache(ttl_s=600, clock=clock)
    cache.record(7, "abc123", SIGNED)

    clock.now += 600
    assert cache.lookup(7, "abc123") == SIGNED

    clock.now += 0.001
    assert cache.lookup(7, "abc123") is None


def test_lookup_never_mutates() -> None:
    clock = _Clock()
    cache = EphemeralUrlCache(ttl_s=10, clock=clock)
    cache.record(1, "r", "https://x/1")
    clock.now += 11

    assert cache.lookup(1, "r") is None
    assert len(cache) == 1

    cache.prune()
    assert len(cache) == 0


def test_entries_are_scoped_per_tab() -> None:
    cache = EphemeralUrlCache(clock=_Clock())
    cache.record(1, "r", "https://x/tab1")
    assert cache.lookup(2, "r") is None
    assert cache.lookup(1, "r") == "https://x/tab1"


def test_record_replaces_and_refreshes_entry() -> None:
    clock = _Clock()
    cache = EphemeralUrlCache(ttl_s=100, clock=clock)
    cache.record(1, "r", "https://x/old")
    clock.now += 90
    cache.record(1, "r", "https://x/new")
    clock.now += 90

    assert cache.lookup(1, "r") == "https://x/new"
    assert len(cache) == 1


def test_capacity_drops_oldest_first() -> None:
    clock = _Clock()
    cache = EphemeralUrlCache(ttl_s=600, max_entries=2, clock=clock)
    cache.record(1, "a", "https://x/a")
    clock.now += 1
    cache.record(1, "b", "https://x/b")
    clock.now += 1
    cache.record(1, "c", "https://x/c")

    assert cache.lookup(1, "a") is None
    assert cache.lookup(1, "b") == "https://x/b"
    assert cache.lookup(1, "c") == "https://x/c"


def test_record_prunes_expired_entries_first() -> None:
    clock = _Clock()
    cache = EphemeralUrlCache(ttl_s=10, max_entries=2, clock=clock)
    cache.record(1, "a", "https://x/a")
    clock.now += 5
    cache.record(1, "b", "https://x/b")
    clock.now += 6
    cache.record(1, "c", "https://x/c")

    assert len(cache) == 2
    assert cache.lookup(1, "b") == "https://x/b"


def test_invalidate_tab_only_touches_that_tab() -> None:
    cache = EphemeralUrlCache(clock=_Clock())
    cache.record(1, "a", "https://x/a")
    cache.record(1, "b", "https://x/b")
    cache.record(2, "a", "https://x/2a")

    assert cache.invalidate_tab(1) == 2
    assert cache.lookup(1, "a") is None
    assert cache.lookup(2, "a") == "https://x/2a"


def test_capture_rule_matches_only_page_timedtext_requests() -> None:
    rule = ResourceUrlCapture()

    assert rule.match(3, SIGNED) == "abc123"
    assert rule.match(-1, SIGNED) is None
    assert rule.match(3, "https://www.youtube.com/watch?v=abc123") is None
    assert rule.match(3, "https://evil.example/api/timedtext?v=abc123") is None
    assert rule.match(3, "https://www.youtube.com/api/timedtext?lang=en") is None


def test_capture_rule_details() -> None:
    rule = ResourceUrlCapture()
    assert rule.details(SIGNED) == {"lang": "en", "caps": "asr"}
    assert rule.details(None) == {"lang": None, "caps": None}


def test_rerecording_a_resource_keeps_only_the_latest_signature() -> None:
    cache = EphemeralUrlCache(clock=_Clock())
    cache.record(1, "vid123", "https://x/api?sig=abc")
    cache.record(1, "vid123", "https://x/api?sig=def")

    assert cache.lookup(1, "vid123") == "https://x/api?sig=def"
    assert len(cache) == 1
