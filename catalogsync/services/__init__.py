"""Sync, repository and guide services."""
