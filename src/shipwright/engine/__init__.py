"""Orchestration engine.

This package drives tracked issues through their lifecycle:
- orchestrator: The engine and its entry points
- comments: Comment scanning (approval parsing, watermarks, recorded PRs)
- formatting: Text posted to the tracker and the code host
"""

from src.shipwright.engine.comments import (
    BOT_MARKER,
    find_recorded_pr_number,
    is_self_authored,
    newest_human_comment,
    parse_approval,
)
from src.shipwright.engine.orchestrator import EngineOptions, OrchestrationEngine

__all__ = [
    # Engine
    "EngineOptions",
    "OrchestrationEngine",
    # Comment scanning
    "BOT_MARKER",
    "find_recorded_pr_number",
    "is_self_authored",
    "newest_human_comment",
    "parse_approval",
]
