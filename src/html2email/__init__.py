"""Convert exported newsletter documents into email-safe HTML."""

from .version import __version__

__all__ = ["__version__"]
