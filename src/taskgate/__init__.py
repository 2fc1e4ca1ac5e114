"""Task admission and dispatch engine over a shared, last-writer-wins state blob."""

__version__ = "0.1.0"
