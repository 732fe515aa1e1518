from __future__ import annotations

import pytest

from sidebar_bridge.config import MIB, BridgeConfig


def test_defaults_match_documented_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SIDEBAR_BRIDGE_CHUNK_SIZE", "SIDEBAR_BRIDGE_ARTIFACT_MAX_BYTES", "SIDEBAR_BRIDGE_URL_TTL"):
        monkeypatch.delenv(name, raising=False)
    cfg = BridgeConfig.from_env()
    assert cfg.artifact_chunk_size == 4 * MIB
    assert cfg.artifact_max_entries == 5
    assert cfg.artifact_max_bytes == 256 * MIB
    assert cfg.resource_url_ttl_s == 600.0
    assert cfg.resource_url_max_entries == 200
    assert cfg.apply_attempts == 5
    assert cfg.apply_retry_delay_s == 0.15
    assert cfg.settle_delay_s == 0.5


def test_env_values_are_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIDEBAR_BRIDGE_APPLY_ATTEMPTS", "999")
    monkeypatch.setenv("SIDEBAR_BRIDGE_PROBE_TIMEOUT", "0")
    monkeypatch.setenv("SIDEBAR_BRIDGE_SETTLE_DELAY", "garbage")
    cfg = BridgeConfig.from_env()
    assert cfg.apply_attempts == 50
    assert cfg.probe_timeout_s == 0.05
    assert cfg.settle_delay_s == 0.5


def test_allowlist(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIDEBAR_BRIDGE_ALLOW_HOSTS", "arxiv.org, .example.com")
    cfg = BridgeConfig.from_env()
    assert cfg.is_host_allowed("arxiv.org") is True
    assert cfg.is_host_allowed("export.arxiv.org") is True
    assert cfg.is_host_allowed("cdn.example.com") is True
    assert cfg.is_host_allowed("evil.org") is False

    monkeypatch.setenv("SIDEBAR_BRIDGE_ALLOW_HOSTS", "*")
    assert BridgeConfig.from_env().is_host_allowed("anything.test") is True
