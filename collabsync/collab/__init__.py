"""Collaboration sessions, operations, conflicts and connection state."""
