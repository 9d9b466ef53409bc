"""Memory synchronization."""
