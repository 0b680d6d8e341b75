"""Maintenance scripts (cleanup, SQL migration)."""
