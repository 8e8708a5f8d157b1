"""Slack notification adapter.

Implements NotificationPort by posting messages to a Slack incoming
webhook.
"""

import logging

import httpx

from careflow.core.ports import NotificationPort

logger = logging.getLogger(__name__)


class SlackNotificationAdapter(NotificationPort):
    """Posts notifications to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Slack notification adapter.

        Args:
            webhook_url: Incoming webhook URL issued by Slack.
            timeout_seconds: Request timeout for each post.
            client: Optional preconfigured client (tests inject a MockTransport).
        """
        if not webhook_url:
            raise ValueError("webhook_url is required for Slack notifications")
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, subject: str, text: str) -> None:
        """Post a message; non-2xx responses are logged, transport errors raised."""
        payload = {"text": f"*{subject}*\n{text}"}
        try:
            client = await self._get_client()
            response = await client.post(self.webhook_url, json=payload)
        except httpx.RequestError as e:
            logger.error(f"Failed to post Slack notification: {e}", extra={"subject": subject})
            raise

        if response.is_success:
            logger.debug(f"Posted Slack notification '{subject}'")
        else:
            logger.error(
                f"Slack webhook rejected notification: {response.status_code}",
                extra={"subject": subject, "response": response.text},
            )
