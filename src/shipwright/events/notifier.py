"""Microsoft Teams notifications.

TeamsNotifier is an EventEmitter that posts a MessageCard to an incoming
webhook for the events reviewers care about: plan ready, implementation
done, task failed and PR merged. Delivery is best effort; a failed POST is
logged and never reaches the engine.
"""

import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from src.shipwright.events.emitter import EventEmitter
from src.shipwright.events.models import EventType, TaskEvent


logger = logging.getLogger(__name__)

# Engine event type -> notification name used in configuration
NOTIFICATION_NAMES = {
    EventType.PLAN_READY: "plan_ready",
    EventType.IMPLEMENTATION_DONE: "implementation_done",
    EventType.ERROR: "failed",
    EventType.MERGED: "merged",
}

THEME_COLORS = {
    "plan_ready": "0078D4",
    "implementation_done": "28A745",
    "failed": "DC3545",
    "merged": "28A745",
}

TITLES = {
    "plan_ready": "Plan Ready for Review",
    "implementation_done": "Implementation Complete",
    "failed": "Task Failed",
    "merged": "PR Merged to Production",
}

DEFAULT_COLOR = "6C757D"


def build_message_card(
    notification: str,
    issue_key: str,
    summary: str,
    message: str,
    url: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a Teams MessageCard payload."""
    title = TITLES.get(notification, notification)
    card: Dict[str, Any] = {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "themeColor": THEME_COLORS.get(notification, DEFAULT_COLOR),
        "summary": f"{issue_key}: {title}",
        "sections": [
            {
                "activityTitle": f"{issue_key}: {title}",
                "facts": [
                    {"title": "Issue", "value": issue_key},
                    {"title": "Summary", "value": summary},
                ],
                "text": message,
                "markdown": True,
            }
        ],
    }
    if url:
        card["potentialAction"] = [
            {
                "@type": "OpenUri",
                "name": "View",
                "targets": [{"os": "default", "uri": url}],
            }
        ]
    return card


class TeamsNotifier(EventEmitter):
    """Posts MessageCards for selected engine events.

    Attributes:
        webhook_url: Teams incoming webhook URL.
        enabled: Notification names to deliver.

    Example:
        >>> notifier = TeamsNotifier("https://example.webhook.office.com/...", ["failed"])
        >>> await notifier.emit(TaskEvent(event_type=EventType.ERROR, issue_key="PROJ-1"))
    """

    def __init__(
        self,
        webhook_url: str,
        enabled: Iterable[str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url
        self.enabled = frozenset(enabled)
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def emit(self, event: TaskEvent) -> None:
        notification = NOTIFICATION_NAMES.get(event.event_type)
        if notification is None or notification not in self.enabled:
            return

        details = event.details
        card = build_message_card(
            notification,
            event.issue_key,
            summary=str(details.get("summary", "")),
            message=str(details.get("message", "")),
            url=details.get("url"),
        )
        try:
            response = await self._client.post(self.webhook_url, json=card)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(
                "Notification failed",
                extra={"notification": notification, "issue_key": event.issue_key, "error": str(e)},
            )

    async def close(self) -> None:
        await self._client.aclose()
