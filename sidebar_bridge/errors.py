"""Error taxonomy shared by every context of the bridge.

Transport failures (`Unreachable`, `Timeout`, `Exhausted`) travel as typed results;
cache consistency failures (`NotFound`, `InvalidRange`) are raised and turned into
`{"ok": false, "error": ...}` replies by the background handlers.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNREACHABLE = "Unreachable"
    TIMEOUT = "Timeout"
    INVALID_RANGE = "InvalidRange"
    NOT_FOUND = "NotFound"
    EXHAUSTED = "Exhausted"

    def __str__(self) -> str:
        return self.value


class BridgeError(Exception):
    kind: ErrorKind = ErrorKind.UNREACHABLE


class ReceivingEndMissing(BridgeError):
    """No endpoint is registered for the target context."""

    kind = ErrorKind.UNREACHABLE


class RequestTimeout(BridgeError):
    kind = ErrorKind.TIMEOUT


class RemoteHandlerError(BridgeError):
    """The receiving handler raised while processing a request."""

    kind = ErrorKind.UNREACHABLE


class ArtifactNotFound(BridgeError):
    kind = ErrorKind.NOT_FOUND


class InvalidChunkRange(BridgeError):
    kind = ErrorKind.INVALID_RANGE


class ArtifactTransferError(BridgeError):
    """A chunked artifact read did not reassemble into the advertised blob."""

    kind = ErrorKind.INVALID_RANGE


_BY_KIND: dict[ErrorKind, type[BridgeError]] = {
    ErrorKind.UNREACHABLE: RemoteHandlerError,
    ErrorKind.TIMEOUT: RequestTimeout,
    ErrorKind.NOT_FOUND: ArtifactNotFound,
    ErrorKind.INVALID_RANGE: InvalidChunkRange,
}


def error_from_kind(kind: str | None, detail: str | None = None) -> BridgeError:
    """Rebuild a typed error from its wire form (``{"error": kind, "detail": ...}``)."""
    try:
        cls = _BY_KIND.get(ErrorKind(str(kind)), BridgeError)
    except ValueError:
        cls = RemoteHandlerError
    err = cls(detail or str(kind or "remote error"))
    if cls is BridgeError:
        err.kind = ErrorKind(str(kind))
    return err


__all__ = [
    "ArtifactNotFound",
    "ArtifactTransferError",
    "BridgeError",
    "ErrorKind",
    "InvalidChunkRange",
    "ReceivingEndMissing",
    "RemoteHandlerError",
    "RequestTimeout",
    "error_from_kind",
]
