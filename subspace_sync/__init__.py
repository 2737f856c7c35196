"""Client-side sync and caching layer for Subspace chat state."""

from .core import SyncCore

__all__ = ["SyncCore"]
