"""VidSolve: stream URL resolution and segmented retrieval for YouTube."""

from .version import __version__

__all__ = ["__version__"]
