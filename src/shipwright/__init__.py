"""Shipwright: issue-to-production orchestration for a coding agent.

This package drives tracker issues through a human-in-the-loop pipeline:
- Planning with a read-only coding agent and posting the plan for review
- Implementation in an isolated git worktree per issue
- Serialized merges into a shared staging branch
- CI validation with bounded agent-assisted repair
- Pull request creation and the final squash merge to production

Webhooks and a periodic reconciliation pass feed the same idempotent
engine entry points, so missed or duplicated notifications converge.
"""
