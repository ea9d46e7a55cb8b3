"""Multi-source financial fundamentals engine."""

__version__ = "0.1.0"
