"""
Whispo context protocol layer.

Connects to external context providers over stdio, exposes the dictation
assistant's own tools over HTTP, and assembles context snapshots for
transcript enhancement.
"""

from whispo.version import __version__

__all__ = ["__version__"]
