"""Access policy adapters deciding which roles may run which operations."""
