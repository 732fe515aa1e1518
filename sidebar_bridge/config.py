from __future__ import annotations

import os
from dataclasses import dataclass, field

MIB = 1024 * 1024


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


@dataclass(frozen=True)
class BridgeConfig:
    # Connection supervision
    probe_timeout_s: float = 1.0
    settle_delay_s: float = 0.5
    request_timeout_s: float = 10.0

    # Yield application
    apply_attempts: int = 5
    apply_retry_delay_s: float = 0.15
    content_ready_attempts: int = 10
    content_ready_retry_delay_s: float = 1.0

    # Artifact cache
    artifact_chunk_size: int = 4 * MIB
    artifact_max_entries: int = 5
    artifact_max_bytes: int = 256 * MIB

    # Ephemeral resource URL cache
    resource_url_ttl_s: float = 600.0
    resource_url_max_entries: int = 200

    # Artifact fetch
    http_timeout_s: float = 30.0
    http_max_bytes: int = 512 * MIB
    allow_hosts: list[str] = field(default_factory=list)

    # WebSocket gateway
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 8766

    watchdog_interval_s: float = 0.5

    @classmethod
    def from_env(cls) -> BridgeConfig:
        allow_raw = os.environ.get("SIDEBAR_BRIDGE_ALLOW_HOSTS", "")
        allow_hosts = [host.strip().lower() for host in allow_raw.split(",") if host.strip() and host.strip() != "*"]
        host = (os.environ.get("SIDEBAR_BRIDGE_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        return cls(
            probe_timeout_s=_float_env("SIDEBAR_BRIDGE_PROBE_TIMEOUT", default=1.0, lo=0.05, hi=30.0),
            settle_delay_s=_float_env("SIDEBAR_BRIDGE_SETTLE_DELAY", default=0.5, lo=0.0, hi=10.0),
            request_timeout_s=_float_env("SIDEBAR_BRIDGE_REQUEST_TIMEOUT", default=10.0, lo=0.1, hi=300.0),
            apply_attempts=_int_env("SIDEBAR_BRIDGE_APPLY_ATTEMPTS", default=5, lo=1, hi=50),
            apply_retry_delay_s=_float_env("SIDEBAR_BRIDGE_APPLY_RETRY_DELAY", default=0.15, lo=0.0, hi=10.0),
            content_ready_attempts=_int_env("SIDEBAR_BRIDGE_READY_ATTEMPTS", default=10, lo=1, hi=100),
            content_ready_retry_delay_s=_float_env("SIDEBAR_BRIDGE_READY_RETRY_DELAY", default=1.0, lo=0.0, hi=60.0),
            artifact_chunk_size=_int_env("SIDEBAR_BRIDGE_CHUNK_SIZE", default=4 * MIB, lo=1, hi=64 * MIB),
            artifact_max_entries=_int_env("SIDEBAR_BRIDGE_ARTIFACT_MAX_ENTRIES", default=5, lo=1, hi=1000),
            artifact_max_bytes=_int_env("SIDEBAR_BRIDGE_ARTIFACT_MAX_BYTES", default=256 * MIB, lo=1, hi=16 * 1024 * MIB),
            resource_url_ttl_s=_float_env("SIDEBAR_BRIDGE_URL_TTL", default=600.0, lo=1.0, hi=86400.0),
            resource_url_max_entries=_int_env("SIDEBAR_BRIDGE_URL_MAX_ENTRIES", default=200, lo=1, hi=100_000),
            http_timeout_s=_float_env("SIDEBAR_BRIDGE_HTTP_TIMEOUT", default=30.0, lo=0.5, hi=600.0),
            http_max_bytes=_int_env("SIDEBAR_BRIDGE_HTTP_MAX_BYTES", default=512 * MIB, lo=1, hi=16 * 1024 * MIB),
            allow_hosts=allow_hosts,
            gateway_host=host,
            gateway_port=_int_env("SIDEBAR_BRIDGE_PORT", default=8766, lo=0, hi=65535),
            watchdog_interval_s=_float_env("SIDEBAR_BRIDGE_WATCHDOG_INTERVAL", default=0.5, lo=0.01, hi=60.0),
        )

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allow_hosts:
            return True
        for raw_allowed in self.allow_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False
