"""Prompt construction and plan output parsing for the coding agent.

Four prompts drive the agent through a task:
- plan: read-only analysis ending in a technical plan plus a plain-language
  summary, or a list of clarifying questions
- implement: execute the approved plan in the task's worktree
- rework: address reviewer feedback on the existing branch
- fix: repair a failing CI run without touching pipeline configuration

Plan output is split on two delimiter lines; parse_plan_output() applies
the same rules the plan prompt describes.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

PLAN_DELIMITER = "===FUNCTIONAL SUMMARY==="
QUESTIONS_DELIMITER = "===QUESTIONS==="

NO_DESCRIPTION = "No additional description provided."


@dataclass(frozen=True)
class PlanOutput:
    """Parsed result of a planning run.

    Attributes:
        technical_plan: Plan detailed enough for another agent to implement.
        functional_summary: Plain-language summary for the reviewer.
        questions: Clarifying questions; set instead of a plan.
    """

    technical_plan: str
    functional_summary: str
    questions: Optional[str] = None

    @property
    def has_questions(self) -> bool:
        return bool(self.questions)


def parse_plan_output(output: str) -> PlanOutput:
    """Split planning output into plan, summary or questions.

    Questions win when present. Without the summary delimiter the whole
    output is used as both the plan and the summary.

    Example:
        >>> parse_plan_output("Edit app.py\\n===FUNCTIONAL SUMMARY===\\nAdds a check").functional_summary
        'Adds a check'
    """
    questions_index = output.find(QUESTIONS_DELIMITER)
    if questions_index != -1:
        questions = output[questions_index + len(QUESTIONS_DELIMITER):].strip()
        return PlanOutput(technical_plan="", functional_summary="", questions=questions)

    delimiter_index = output.find(PLAN_DELIMITER)
    if delimiter_index == -1:
        text = output.strip()
        return PlanOutput(technical_plan=text, functional_summary=text)

    return PlanOutput(
        technical_plan=output[:delimiter_index].strip(),
        functional_summary=output[delimiter_index + len(PLAN_DELIMITER):].strip(),
    )


def build_plan_prompt(
    issue_key: str,
    summary: str,
    description: str,
    previous_plan: Optional[str] = None,
    feedback: Optional[str] = None,
) -> str:
    """Prompt for a read-only planning run, optionally revising a plan."""
    revision = ""
    if previous_plan is not None or feedback:
        revision = (
            f"\n## Previous Plan:\n{previous_plan or '(none)'}\n"
            f"\n## Reviewer Feedback (revise the plan to address this):\n{feedback or ''}\n"
        )

    return f"""You are analyzing tracker issue {issue_key} to create an implementation plan.
DO NOT make any code changes. Only analyze and plan.

## Task: {summary}

## Description:
{description or NO_DESCRIPTION}
{revision}
## Instructions:
1. Read the existing codebase (check CLAUDE.md or README if present)
2. Understand the current behavior and how it relates to this task
3. Work out exactly what needs to change and what the impact will be
4. Consider edge cases and risks

## Output rules:
- Explore silently with the available tools; do not narrate your steps.
- Your FINAL message must use exactly ONE of the two formats below.

### Format A: you need clarification before you can plan
Output ONLY the line {QUESTIONS_DELIMITER} followed by a short numbered list of
questions. The reader is a non-technical project manager.

### Format B: you can plan
Output two sections separated by the line {PLAN_DELIMITER}

Above the separator, a technical plan another engineer could implement from:
files to modify or create, the change in each, the approach and edge cases.

Below the separator, a plain-language summary with no file names or code:
- **What changes:** what users will notice
- **How it works:** the approach in plain words
- **What to watch out for:** risks and assumptions
- **Scope:** Small / Medium / Large with a one-sentence justification

Prefer Format B whenever reasonable assumptions can be made, and list those
assumptions under "What to watch out for"."""


def build_implement_prompt(
    issue_key: str,
    summary: str,
    description: str,
    plan: str,
    reviewer_notes: Optional[str] = None,
) -> str:
    """Prompt for implementing an approved plan in the task's worktree."""
    notes = f"\n## Reviewer Notes:\n{reviewer_notes}\n" if reviewer_notes else ""
    return f"""You are implementing tracker issue {issue_key}. The plan was reviewed and approved.

## Task: {summary}

## Original Description:
{description or NO_DESCRIPTION}

## Approved Plan:
{plan}
{notes}
## Instructions:
1. Follow the approved plan and implement every change it describes
2. Follow the existing code style and patterns
3. Add or update tests where the plan calls for it
4. Run the existing tests and linter if configured
5. Keep the change focused on what the plan describes
6. Leave your changes uncommitted or commit them; both are fine

Finish with a brief summary of what you changed."""


def build_rework_prompt(
    issue_key: str,
    summary: str,
    description: str,
    plan: str,
    feedback: str,
) -> str:
    """Prompt for addressing reviewer feedback on an existing branch."""
    return f"""You are fixing tracker issue {issue_key} based on test feedback.
The implementation already exists on this branch, but the reviewer found issues.

## Task: {summary}

## Original Description:
{description or NO_DESCRIPTION}

## Approved Plan:
{plan or '(not recorded)'}

## Reviewer Feedback (address all of it):
{feedback}

## Instructions:
1. Read the feedback carefully
2. Review the current code on this branch to see what was already done
3. Make the necessary fixes
4. Run the existing tests and linter if configured

Finish with a brief summary of what you fixed."""


def build_fix_prompt(
    issue_key: str,
    summary: str,
    branch_name: str,
    attempt: int,
    failed_job_logs: Sequence[str],
) -> str:
    """Prompt for repairing a failing CI run on the task's branch."""
    logs = "\n\n".join(failed_job_logs) or "(no job logs available)"
    return f"""You are fixing a CI build failure for tracker issue {issue_key} (attempt {attempt}).

## Task: {summary}

## Branch: {branch_name}

## Failed Job Logs (last 200 lines per job):
```
{logs}
```

## Instructions:
1. Read the error logs and identify the root cause of the failure
2. Fix the code so the build passes
3. Do NOT change the CI/CD workflow files unless the error is clearly in the workflow config
4. Keep fixes minimal; only fix what is broken
5. Run the available build, lint and test commands locally to verify"""
