"""termbridge — remote terminal session bridge for shells and AI coding agents."""

__version__ = "0.1.0"
