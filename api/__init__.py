"""FastAPI boundary for channel adapters."""
