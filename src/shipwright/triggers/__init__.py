"""Inbound triggers: webhook parsing, verification and dispatch.

The reconciler lives in triggers.reconciler and is imported from there; it
depends on the engine, which depends on the event models here.
"""

from src.shipwright.triggers.dispatcher import EventDispatcher
from src.shipwright.triggers.models import (
    ChangeRequestFeedback,
    CommentCreated,
    IssueCreated,
    IssueUpdated,
    TriggerEvent,
)
from src.shipwright.triggers.signature import compute_signature, verify_signature
from src.shipwright.triggers.webhook import GitHubWebhookParser, JiraWebhookParser

__all__ = [
    # Event variants
    "ChangeRequestFeedback",
    "CommentCreated",
    "IssueCreated",
    "IssueUpdated",
    "TriggerEvent",
    # Webhooks
    "GitHubWebhookParser",
    "JiraWebhookParser",
    "compute_signature",
    "verify_signature",
    # Dispatch
    "EventDispatcher",
]
