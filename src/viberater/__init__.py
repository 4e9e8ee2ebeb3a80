"""viberater offline-first sync client."""

__version__ = "0.1.0"
