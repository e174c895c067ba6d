"""Jira Cloud issue tracker integration."""

from src.shipwright.tracker.adf import adf_to_text, markdown_to_adf
from src.shipwright.tracker.client import (
    JiraAPIError,
    JiraClient,
    TransitionNotFoundError,
)
from src.shipwright.tracker.models import (
    TrackerComment,
    TrackerIssue,
    parse_jira_datetime,
)

__all__ = [
    "adf_to_text",
    "markdown_to_adf",
    "JiraAPIError",
    "JiraClient",
    "TransitionNotFoundError",
    "TrackerComment",
    "TrackerIssue",
    "parse_jira_datetime",
]
