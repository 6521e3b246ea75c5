"""Signer interface used once a release has been verified."""

from __future__ import annotations

from typing import Protocol


class SigningError(RuntimeError):
    """Raised when a verified release could not be signed."""


class Signer(Protocol):
    def sign(self, digest: str, location: str) -> bytes:
        """Return a detached signature for the release at ``location``."""
        ...
