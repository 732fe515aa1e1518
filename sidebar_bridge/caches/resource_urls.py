"""Bounded, TTL'd cache of passively captured resource URLs.

The cached URLs carry a time-limited signature that only the origin page can
produce, so entries are only ever recorded from observed traffic and scoped to
``(tab_id, resource_id)``.
"""

from __future__ import annotations

import time
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ResourceUrlEntry:
    tab_id: int
    resource_id: str
    url: str
    created_at: float


class EphemeralUrlCache:
    def __init__(
        self,
        *,
        ttl_s: float = 600.0,
        max_entries: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_s = float(ttl_s)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._entries: dict[tuple[int, str], ResourceUrlEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, tab_id: int, resource_id: str, url: str) -> ResourceUrlEntry:
        key = (int(tab_id), str(resource_id))
        entry = ResourceUrlEntry(tab_id=key[0], resource_id=key[1], url=str(url), created_at=self._clock())
        self._entries.pop(key, None)
        self._entries[key] = entry
        self.prune()
        return entry

    def lookup(self, tab_id: int, resource_id: str) -> str | None:
        # Reads never mutate; expired entries are left for the next record().
        entry = self._entries.get((int(tab_id), str(resource_id)))
        if entry is None or self._expired(entry, self._clock()):
            return None
        return entry.url

    def invalidate_tab(self, tab_id: int) -> int:
        doomed = [key for key in self._entries if key[0] == int(tab_id)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def prune(self) -> None:
        now = self._clock()
        for key, entry in list(self._entries.items()):
            if self._expired(entry, now):
                del self._entries[key]

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1].created_at)[:overflow]
            for key, _entry in oldest:
                del self._entries[key]

    def stats(self) -> dict[str, Any]:
        return {"entries": len(self._entries), "maxEntries": self.max_entries, "ttlS": self.ttl_s}

    def _expired(self, entry: ResourceUrlEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_s


@dataclass(frozen=True)
class ResourceUrlCapture:
    """Match rule for passive capture of signed resource URLs from page traffic."""

    host: str = "www.youtube.com"
    path: str = "/api/timedtext"
    id_param: str = "v"
    detail_params: tuple[str, ...] = ("lang", "caps")

    def match(self, tab_id: Any, url: str) -> str | None:
        """Return the resource id when ``url`` is a capturable request from a page tab."""
        # Negative tab ids are extension pages / background traffic.
        if isinstance(tab_id, bool) or not isinstance(tab_id, int) or tab_id < 0:
            return None
        try:
            parsed = urllib.parse.urlparse(str(url or ""))
        except ValueError:
            return None
        if (parsed.hostname or "").lower() != self.host or parsed.path != self.path:
            return None
        values = urllib.parse.parse_qs(parsed.query).get(self.id_param) or []
        resource_id = values[0].strip() if values else ""
        return resource_id or None

    def details(self, url: str | None) -> dict[str, str | None]:
        out: dict[str, str | None] = {name: None for name in self.detail_params}
        if not url:
            return out
        query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
        for name in self.detail_params:
            values = query.get(name)
            out[name] = values[0] if values else None
        return out

    def allows_fetch(self, url: str) -> bool:
        """True for URLs on the capture site (any subdomain) under the capture path."""
        try:
            parsed = urllib.parse.urlparse(str(url or ""))
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https"):
            return False
        site = self.host.lower().removeprefix("www.")
        host = (parsed.hostname or "").lower()
        return (host == site or host.endswith("." + site)) and parsed.path == self.path


__all__ = ["EphemeralUrlCache", "ResourceUrlCapture", "ResourceUrlEntry"]
