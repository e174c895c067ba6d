"""Text the engine posts to the tracker and the code host.

Every tracker comment starts with BOT_MARKER so comment scans can tell the
automation's own comments from human input.
"""

from typing import Optional

from src.shipwright.agent.prompts import PlanOutput
from src.shipwright.engine.comments import BOT_MARKER
from src.shipwright.recovery import CIOutcome, CIStatus


FAILED = f"{BOT_MARKER}❌"

OUTPUT_EXCERPT_CHARS = 1000
PR_NOTES_CHARS = 2000
FEEDBACK_EXCERPT_CHARS = 200


# -----------------------------------------------------------------------------
# Planning
# -----------------------------------------------------------------------------
def analyzing_comment() -> str:
    return f"{BOT_MARKER} Claude is analyzing this task and creating an implementation plan..."


def plan_comment(plan: PlanOutput, approval_keyword: str, revised: bool = False) -> str:
    if plan.has_questions:
        return (
            f"{BOT_MARKER} **Questions before planning:**\n\n{plan.questions}\n\n"
            f"---\n"
            f"Answer in a comment and the plan will be drafted with your answers."
        )

    heading = "Updated Plan" if revised else "Implementation Plan"
    body = plan.functional_summary
    if plan.technical_plan and plan.technical_plan != plan.functional_summary:
        body = f"{body}\n\n**Technical plan:**\n\n{plan.technical_plan}"
    return (
        f"{BOT_MARKER} **{heading}:**\n\n{body}\n\n"
        f"---\n"
        f"**To approve:** Comment `{approval_keyword}` (optionally add notes after it)\n"
        f"**To reject/modify:** Comment with your feedback and the plan will be revised\n"
        f"**To ask a question:** Just comment your question"
    )


def replanning_comment() -> str:
    return f"{BOT_MARKER} Got it, adjusting the plan based on your feedback..."


def planning_failed_comment(error: str) -> str:
    return (
        f"{FAILED} Planning failed:\n\n{error}\n\n"
        f"Please adjust the task description and retry."
    )


def replanning_failed_comment(error: str) -> str:
    return f"{FAILED} Re-planning failed: {error}\n\nComment again to retry."


# -----------------------------------------------------------------------------
# Implementation and rework
# -----------------------------------------------------------------------------
def implementation_started_comment() -> str:
    return f"{BOT_MARKER} Plan approved, starting implementation..."


def ci_note(outcome: CIOutcome) -> str:
    if outcome.status is CIStatus.PASSED:
        note = "✅ Staging CI passed"
        if outcome.run_url:
            note = f"{note}: {outcome.run_url}"
        if outcome.fix_attempts:
            note = f"{note} (after {outcome.fix_attempts} automatic fix attempt(s))"
        return note
    if outcome.status is CIStatus.NOT_FOUND:
        return "⚠️ No staging CI run was found for this change"
    return "ℹ️ Staging CI is not configured"


def implementation_done_comment(
    branch_name: str,
    pr_url: str,
    pr_number: int,
    note: str,
    done_status: str,
) -> str:
    return (
        f"{BOT_MARKER} ✅ Implementation complete!\n\n"
        f"**Branch:** `{branch_name}`\n"
        f"**PR:** {pr_url}\n"
        f"**PR #:** {pr_number}\n\n"
        f"{note}\n\n"
        f"Please review the PR and staging site.\n"
        f'When satisfied, move this task to **"{done_status}"** to merge & deploy to production.'
    )


def rework_started_comment() -> str:
    return f"{BOT_MARKER} Got it, reviewing your feedback and making fixes..."


def rework_no_changes_comment() -> str:
    return (
        f"{BOT_MARKER} I reviewed the feedback but didn't find any code changes needed. "
        f"Could you provide more specific details about what needs to change?"
    )


def rework_done_comment(output: str, note: str, done_status: str) -> str:
    changed = output[:OUTPUT_EXCERPT_CHARS] or "See latest commits."
    return (
        f"{BOT_MARKER} ✅ Fixes pushed!\n\n"
        f"**What changed:** {changed}\n\n"
        f"{note}\n\n"
        f"The PR and staging site are updated. Please re-test.\n"
        f'Move to **"{done_status}"** when satisfied, or comment again with further feedback.'
    )


def conflict_comment(error: str) -> str:
    return (
        f"{FAILED} Merging into staging hit a conflict:\n\n{error}\n\n"
        f"Staging was left unchanged. Resolve the conflict manually or comment "
        f"with guidance to try again."
    )


def failure_comment(heading: str, error: str, output: Optional[str] = None) -> str:
    text = f"{FAILED} {heading}:\n\n{error}"
    if output:
        text = f"{text}\n\n```\n{output[:OUTPUT_EXCERPT_CHARS]}\n```"
    return f"{text}\n\nPlease review and retry or handle manually."


def interrupted_comment(phase: str) -> str:
    return (
        f"{FAILED} Work in phase `{phase}` was interrupted by a restart.\n\n"
        f"Reassign the task to the automation to retry."
    )


# -----------------------------------------------------------------------------
# Merge
# -----------------------------------------------------------------------------
def merged_comment(pr_number: int, production_branch: str) -> str:
    return (
        f"{BOT_MARKER}✅ PR #{pr_number} merged to {production_branch}. "
        f"Production deploy triggered."
    )


# -----------------------------------------------------------------------------
# Git and pull requests
# -----------------------------------------------------------------------------
def implementation_commit_message(issue_key: str, summary: str) -> str:
    return f"{issue_key}: {summary}\n\nImplemented by automation.\nJira: {issue_key}"


def rework_commit_message(issue_key: str, feedback: str) -> str:
    return (
        f"{issue_key}: Address review feedback\n\n"
        f"Feedback: {feedback[:FEEDBACK_EXCERPT_CHARS]}"
    )


def pr_title(issue_key: str, summary: str) -> str:
    return f"{issue_key}: {summary}"


def pr_body(
    issue_key: str,
    summary: str,
    plan: Optional[str],
    output: str,
    note: str,
    issue_url: str,
) -> str:
    notes = output[:PR_NOTES_CHARS] or "See commits."
    return (
        f"## {issue_key}: {summary}\n\n"
        f"### Approved Plan\n{plan or 'No plan recorded.'}\n\n"
        f"### Implementation Notes\n{notes}\n\n"
        f"### Staging CI\n{note}\n\n"
        f"[Jira: {issue_key}]({issue_url})\n\n"
        f"---\n*Automated by Shipwright*"
    )
