"""Library for posting plan summaries and failures to chat services."""

from abc import ABC, abstractmethod
import datetime
import logging
from typing import Any

import httpx

from . import __version__

__all__ = [
    "Notifier",
    "SlackNotifier",
    "NullNotifier",
    "new_notifier",
]

_LOGGER = logging.getLogger(__name__)

GREEN = "#36a64f"
RED = "#FF0000"


class Notifier(ABC):
    """Sends messages about the progress of a run."""

    @abstractmethod
    async def notify(
        self, content: str, failure: bool = False, executing: bool = False
    ) -> bool:
        """Send a message, returning False if it could not be delivered."""


class NullNotifier(Notifier):
    """Notifier used when no webhook is configured."""

    async def notify(
        self, content: str, failure: bool = False, executing: bool = False
    ) -> bool:
        return True


def slack_payload(
    content: str,
    failure: bool = False,
    executing: bool = False,
    now: datetime.datetime | None = None,
) -> dict[str, Any]:
    """Build the Slack attachment for a message."""
    if not content:
        pretext = "*No actions to perform!*"
        text = ""
    elif failure:
        pretext = "*Failed to generate/execute a plan: *"
        text = f"*{content.rstrip()}*"
    elif executing:
        pretext = "*Here is what I have done: *"
        text = f"*{content}*"
    else:
        pretext = "*Here is what I am going to do: *"
        text = "\n".join(f"* *{line}*" for line in content.split("\n"))
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return {
        "attachments": [
            {
                "fallback": "Helmsman results.",
                "color": RED if failure else GREEN,
                "pretext": pretext,
                "text": text,
                "footer": f"Helmsman {__version__}",
                "ts": int(now.timestamp()),
                "mrkdwn_in": ["text", "pretext"],
            }
        ]
    }


class SlackNotifier(Notifier):
    """Posts messages to a Slack incoming webhook."""

    def __init__(
        self,
        webhook: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize SlackNotifier."""
        self._webhook = webhook
        self._timeout = timeout
        self._transport = transport

    async def notify(
        self, content: str, failure: bool = False, executing: bool = False
    ) -> bool:
        _LOGGER.info("Posting notifications to Slack ... ")
        payload = slack_payload(content, failure, executing)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self._webhook, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as err:
            _LOGGER.error("Failed to send slack message: %s", err)
            return False
        return True


def new_notifier(webhook: str | None) -> Notifier:
    """Return a notifier for the webhook, if one is configured."""
    if webhook:
        return SlackNotifier(webhook)
    return NullNotifier()
