"""Persisted migration state."""
