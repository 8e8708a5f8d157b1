"""Stdout notification adapter.

Implements NotificationPort by printing messages to the terminal with
human-readable formatting.
"""

import asyncio
import logging
from datetime import datetime, timezone

from careflow.core.ports import NotificationPort

logger = logging.getLogger(__name__)


class StdoutNotificationAdapter(NotificationPort):
    """Prints notifications to stdout as framed blocks."""

    def __init__(self, width: int = 80):
        self.width = width

    async def send(self, subject: str, text: str) -> None:
        await asyncio.to_thread(print, self._format_block(subject, text))

    def _format_block(self, subject: str, text: str) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        lines = [
            "=" * self.width,
            subject.upper(),
            "-" * self.width,
            text,
            "",
            timestamp,
            "=" * self.width,
        ]
        return "\n".join(lines)
