"""Exception hierarchy for the artifact ledger.

Every error raised by the store derives from StoreError so callers can catch
one base class at the boundary (the CLI maps it to exit code 1).
"""

from __future__ import annotations

from collections.abc import Iterable


class StoreError(Exception):
    """Base exception for artifact store errors."""


class NotFoundError(StoreError):
    """Raised when an artifact, version, or catalog entry is absent."""


class CorruptStateError(StoreError):
    """Raised when the catalog or a sidecar cannot be read or is malformed."""


class AtomicWriteError(StoreError):
    """Raised when a temporary write or rename fails.

    Prior on-disk state is left untouched when this is raised.
    """


class SerializationError(StoreError):
    """Raised when a format backend cannot encode an object.

    Like AtomicWriteError, prior on-disk state is left untouched.
    """


class CycleDetectedError(StoreError):
    """Raised when a lineage traversal finds a loop.

    Attributes:
        nodes: Paths participating in (or downstream of) the cycle.
    """

    def __init__(self, nodes: Iterable[str]) -> None:
        self.nodes = sorted(nodes)
        super().__init__(f"Cycle detected in lineage among: {', '.join(self.nodes)}")


class BuilderFailureError(StoreError):
    """Raised when a builder callback fails or returns a malformed bundle."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"Builder failed for {path}: {message}")


class PolicyError(StoreError, ValueError):
    """Raised for invalid retention or planning arguments."""
