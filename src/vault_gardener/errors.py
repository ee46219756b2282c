"""Exception hierarchy shared across the coordination layer."""

from __future__ import annotations


class GardenerError(RuntimeError):
    """Base class for vault-gardener errors."""


__all__ = ["GardenerError"]
