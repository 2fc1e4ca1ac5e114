"""State store adapters."""
