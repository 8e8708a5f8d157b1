"""Notification adapters for telling staff about automation results.

Implementations support multiple output channels:
- Stdout (terminal pretty-print)
- Slack (incoming webhook)
"""
