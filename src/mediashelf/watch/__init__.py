"""Directory watching and candidate discovery."""

from .service import DiscoveryService, QuietWindowTracker

__all__ = ["DiscoveryService", "QuietWindowTracker"]
