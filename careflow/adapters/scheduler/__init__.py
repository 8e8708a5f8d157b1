"""Scheduler adapters for driving the automation loop.

Implementations:
- Daemon (asyncio event loop with configurable interval)
"""
