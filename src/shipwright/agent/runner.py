"""Coding agent invocation through the Claude Agent SDK.

AgentRunner runs one agent session per call and always returns an
AgentResult; timeouts and SDK failures become unsuccessful results rather
than exceptions, so callers treat "no successful result" uniformly.

Two modes exist:
- plan: read-only tools in the main clone, small turn and cost budget
- write: file edits accepted automatically inside a task worktree, larger
  budget; rework sessions resume the previous conversation
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence, Union

from claude_agent_sdk import ClaudeAgentOptions, query

from src.shipwright.agent.events import AgentResult, AgentTranscript, translate_messages
from src.shipwright.agent.prompts import (
    build_fix_prompt,
    build_implement_prompt,
    build_plan_prompt,
    build_rework_prompt,
)


logger = logging.getLogger(__name__)

PLAN_ALLOWED_TOOLS = ["Read", "Grep", "Glob"]
PLAN_DISALLOWED_TOOLS = ["Write", "Edit", "MultiEdit", "NotebookEdit", "Bash"]


class AgentMode(str, Enum):
    PLAN = "plan"
    WRITE = "write"


@dataclass(frozen=True)
class AgentLimits:
    """Per-invocation ceilings for one mode."""

    max_turns: int
    max_budget_usd: float
    timeout_seconds: float


QueryFn = Callable[..., AsyncIterator[Any]]


class AgentRunner:
    """Runs coding agent sessions.

    Attributes:
        repo_path: Main clone, used as the working directory for planning.
        plan_limits: Limits for read-only planning runs.
        write_limits: Limits for implement, rework and fix runs.
        model: Optional model override.
    """

    def __init__(
        self,
        repo_path: Union[str, Path],
        plan_limits: AgentLimits,
        write_limits: AgentLimits,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        use_subscription_auth: bool = False,
        query_fn: Optional[QueryFn] = None,
    ):
        self.repo_path = Path(repo_path)
        self.plan_limits = plan_limits
        self.write_limits = write_limits
        self.model = model
        self.api_key = api_key
        self.use_subscription_auth = use_subscription_auth
        self._query = query_fn or query

    def _env(self) -> Dict[str, str]:
        if self.use_subscription_auth:
            # An empty key makes the CLI fall back to the logged-in account
            return {"ANTHROPIC_API_KEY": ""}
        if self.api_key:
            return {"ANTHROPIC_API_KEY": self.api_key}
        return {}

    def _options(
        self, mode: AgentMode, cwd: Path, resume: Optional[str]
    ) -> ClaudeAgentOptions:
        limits = self.plan_limits if mode is AgentMode.PLAN else self.write_limits
        kwargs: Dict[str, Any] = {
            "cwd": str(cwd),
            "env": self._env(),
            "max_turns": limits.max_turns,
            "max_budget_usd": limits.max_budget_usd,
            "stderr": _log_stderr,
        }
        if mode is AgentMode.PLAN:
            kwargs["permission_mode"] = "default"
            kwargs["allowed_tools"] = list(PLAN_ALLOWED_TOOLS)
            kwargs["disallowed_tools"] = list(PLAN_DISALLOWED_TOOLS)
        else:
            kwargs["permission_mode"] = "acceptEdits"
        if resume:
            kwargs["resume"] = resume
        if self.model:
            kwargs["model"] = self.model
        return ClaudeAgentOptions(**kwargs)

    async def run(
        self,
        prompt: str,
        mode: AgentMode,
        cwd: Optional[Path] = None,
        resume: Optional[str] = None,
        label: str = "agent",
    ) -> AgentResult:
        """Run one agent session and accumulate its result.

        Args:
            prompt: Prompt to send.
            mode: Tool permissions and budget to apply.
            cwd: Working directory; defaults to the main clone.
            resume: Conversation token to continue.
            label: Short name used in logs.

        Returns:
            AgentResult; never raises for agent-side failures.
        """
        limits = self.plan_limits if mode is AgentMode.PLAN else self.write_limits
        options = self._options(mode, cwd or self.repo_path, resume)
        transcript = AgentTranscript()
        error: Optional[str] = None

        logger.info(
            "Starting agent run",
            extra={
                "run": label,
                "mode": mode.value,
                "cwd": str(cwd or self.repo_path),
                "resume": bool(resume),
                "max_turns": limits.max_turns,
            },
        )
        try:
            await asyncio.wait_for(
                transcript.consume_all(
                    translate_messages(self._query(prompt=prompt, options=options))
                ),
                timeout=limits.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"Agent run timed out after {limits.timeout_seconds}s"
        except Exception as exc:
            logger.exception("Agent run raised", extra={"run": label})
            error = f"Agent invocation failed: {exc}"

        result = transcript.to_result(error)
        logger.info(
            "Agent run finished",
            extra={
                "run": label,
                "success": result.success,
                "cost_usd": result.cost_usd,
                "num_turns": result.num_turns,
                "budget_exceeded": result.budget_exceeded,
                "error": result.error,
            },
        )
        return result

    async def plan(
        self,
        issue_key: str,
        summary: str,
        description: str,
        previous_plan: Optional[str] = None,
        feedback: Optional[str] = None,
    ) -> AgentResult:
        prompt = build_plan_prompt(issue_key, summary, description, previous_plan, feedback)
        return await self.run(prompt, AgentMode.PLAN, label=f"{issue_key}:plan")

    async def implement(
        self,
        issue_key: str,
        summary: str,
        description: str,
        plan: str,
        reviewer_notes: Optional[str],
        cwd: Path,
    ) -> AgentResult:
        prompt = build_implement_prompt(issue_key, summary, description, plan, reviewer_notes)
        return await self.run(prompt, AgentMode.WRITE, cwd=cwd, label=f"{issue_key}:implement")

    async def rework(
        self,
        issue_key: str,
        summary: str,
        description: str,
        plan: str,
        feedback: str,
        cwd: Path,
        conversation_token: Optional[str] = None,
    ) -> AgentResult:
        prompt = build_rework_prompt(issue_key, summary, description, plan, feedback)
        return await self.run(
            prompt,
            AgentMode.WRITE,
            cwd=cwd,
            resume=conversation_token,
            label=f"{issue_key}:rework",
        )

    async def fix_build(
        self,
        issue_key: str,
        summary: str,
        branch_name: str,
        attempt: int,
        failed_job_logs: Sequence[str],
        cwd: Path,
    ) -> AgentResult:
        prompt = build_fix_prompt(issue_key, summary, branch_name, attempt, failed_job_logs)
        return await self.run(prompt, AgentMode.WRITE, cwd=cwd, label=f"{issue_key}:fix-{attempt}")


def _log_stderr(line: str) -> None:
    logger.debug("agent stderr: %s", line.rstrip())
