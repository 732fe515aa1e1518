"""Background-owned caches (artifacts + ephemeral resource URLs)."""

from .artifacts import ArtifactCache, ArtifactEntry, ArtifactRef
from .resource_urls import EphemeralUrlCache, ResourceUrlCapture, ResourceUrlEntry

__all__ = [
    "ArtifactCache",
    "ArtifactEntry",
    "ArtifactRef",
    "EphemeralUrlCache",
    "ResourceUrlCapture",
    "ResourceUrlEntry",
]
