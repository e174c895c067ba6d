"""Coding agent invocation.

- prompts: plan, implement, rework and fix prompts plus plan parsing
- events: typed agent events and the transcript accumulator
- runner: AgentRunner, which runs sessions through the Claude Agent SDK
"""

from src.shipwright.agent.events import (
    AgentEvent,
    AgentResult,
    AgentTranscript,
    AssistantTextEvent,
    ResultEvent,
    SystemEvent,
    translate_messages,
)
from src.shipwright.agent.prompts import PlanOutput, parse_plan_output
from src.shipwright.agent.runner import AgentLimits, AgentMode, AgentRunner

__all__ = [
    # Events
    "AgentEvent",
    "AgentResult",
    "AgentTranscript",
    "AssistantTextEvent",
    "ResultEvent",
    "SystemEvent",
    "translate_messages",
    # Prompts
    "PlanOutput",
    "parse_plan_output",
    # Runner
    "AgentLimits",
    "AgentMode",
    "AgentRunner",
]
