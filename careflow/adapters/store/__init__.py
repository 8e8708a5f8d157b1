"""Store adapters for episodes, the event log and record collections.

Implementations:
- SQLite (zero-config, single-file)
"""
