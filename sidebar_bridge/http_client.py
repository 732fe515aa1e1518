from __future__ import annotations

import http.client
import ssl
import urllib.parse
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener, urlopen

from .config import BridgeConfig

_PDF_ACCEPT = "application/pdf,*/*"


class HttpClientError(Exception):
    pass


class _SafeRedirectHandler(HTTPRedirectHandler):
    def __init__(self, config: BridgeConfig) -> None:
        super().__init__()
        self._config = config

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # urllib may pass relative URLs here; normalize against the previous URL.
        absolute = urllib.parse.urljoin(req.full_url, str(newurl))
        parsed = urllib.parse.urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            raise HttpClientError("Only http/https are supported (redirect)")
        if not self._config.is_host_allowed(parsed.hostname or ""):
            raise HttpClientError(f"Host {parsed.hostname} is not in allowlist (redirect)")
        return super().redirect_request(req, fp, code, msg, headers, absolute)


def _parse(url: str) -> urllib.parse.ParseResult:
    try:
        return urllib.parse.urlparse(url)
    except ValueError as exc:
        raise HttpClientError(f"Invalid url: {exc}") from exc


def _request_headers(parsed: urllib.parse.ParseResult) -> dict[str, str]:
    headers = {
        "User-Agent": "sidebar-bridge/1.0",
        "Accept": _PDF_ACCEPT,
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }
    # Some publisher CDNs only serve signed assets with the originating site as referer.
    host = (parsed.hostname or "").lower()
    if host.endswith("sciencedirectassets.com"):
        headers["Accept"] = "*/*"
        headers["Referer"] = "https://www.sciencedirect.com/"
        headers["Origin"] = "https://www.sciencedirect.com"
    return headers


def _read_capped(resp, max_bytes: int) -> bytes:  # noqa: ANN001
    body = resp.read(max_bytes + 1)
    if len(body) > max_bytes:
        raise HttpClientError(f"Resource exceeds {max_bytes} bytes")
    return body


def _check_remote(parsed: urllib.parse.ParseResult, config: BridgeConfig) -> None:
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    if not config.is_host_allowed(parsed.hostname or ""):
        raise HttpClientError(f"Host {parsed.hostname} is not in allowlist")


def fetch_bytes(url: str, config: BridgeConfig) -> bytes:
    """Fetch a whole binary resource (http/https/file) under the configured limits."""
    parsed = _parse(url)
    if parsed.scheme == "file":
        try:
            with urlopen(url, timeout=config.http_timeout_s) as resp:
                return _read_capped(resp, config.http_max_bytes)
        except (OSError, ValueError) as exc:
            raise HttpClientError(f"Cannot read local file: {exc}") from exc

    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https/file are supported")
    _check_remote(parsed, config)

    req = Request(url, headers=_request_headers(parsed))
    try:
        ctx = ssl.create_default_context()
        opener = build_opener(_SafeRedirectHandler(config), HTTPSHandler(context=ctx))
        with opener.open(req, timeout=config.http_timeout_s) as resp:
            return _read_capped(resp, config.http_max_bytes)
    except HTTPError as exc:
        raise HttpClientError(f"HTTP {exc.code}") from exc
    except (OSError, ValueError, http.client.HTTPException) as exc:
        raise HttpClientError(str(exc)) from exc


def http_get(url: str, config: BridgeConfig) -> dict[str, object]:
    """GET a text resource without cookies. Error statuses are returned, not raised."""
    parsed = _parse(url)
    _check_remote(parsed, config)
    req = Request(url, headers={"User-Agent": "sidebar-bridge/1.0", "Accept": "*/*"})
    try:
        ctx = ssl.create_default_context()
        opener = build_opener(_SafeRedirectHandler(config), HTTPSHandler(context=ctx))
        try:
            with opener.open(req, timeout=config.http_timeout_s) as resp:
                status = resp.status
                body = resp.read(config.http_max_bytes + 1)
        except HTTPError as exc:
            status = exc.code
            body = exc.read(config.http_max_bytes + 1) if exc.fp is not None else b""
    except (OSError, ValueError, http.client.HTTPException) as exc:
        raise HttpClientError(str(exc)) from exc
    truncated = len(body) > config.http_max_bytes
    if truncated:
        body = body[: config.http_max_bytes]
    return {
        "status": status,
        "body": body.decode(errors="replace"),
        "truncated": truncated,
    }
