"""FastAPI application entry point for Shipwright.

This module wires the orchestration engine to its inputs and outputs:
- POST /webhooks/jira and /webhooks/github: verified, parsed and queued
- GET /status: task and admission summary (bearer token)
- GET /health: liveness
- GET /metrics: Prometheus text

The lifespan builds every component from ShipwrightSettings, fails tasks
that a previous process left mid-flight, and starts the webhook workers
and the reconciliation loop. Shutdown drains queued events for a bounded
time before closing clients and the state store.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from src.shipwright.admission import ConcurrencyGuard
from src.shipwright.agent.runner import AgentLimits, AgentRunner
from src.shipwright.config import ShipwrightSettings, get_settings
from src.shipwright.engine.orchestrator import EngineOptions, OrchestrationEngine
from src.shipwright.events import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    TeamsNotifier,
    create_event_emitter,
    generate_metrics_output,
    get_metrics,
)
from src.shipwright.hosting.client import GitHubClient
from src.shipwright.recovery import RecoveryLoop
from src.shipwright.state.machine import TaskStateMachine
from src.shipwright.state.models import utcnow
from src.shipwright.state.store import create_task_store
from src.shipwright.tracker.client import JiraClient
from src.shipwright.triggers import (
    EventDispatcher,
    GitHubWebhookParser,
    JiraWebhookParser,
    TriggerEvent,
    verify_signature,
)
from src.shipwright.triggers.reconciler import Reconciler
from src.shipwright.workspace.git import GitRunner
from src.shipwright.workspace.manager import WorkspaceConfig, WorkspaceManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

jira_parser = JiraWebhookParser()
github_parser = GitHubWebhookParser()


@dataclass
class Runtime:
    """Components the HTTP routes need, plus shutdown hooks."""

    settings: ShipwrightSettings
    engine: OrchestrationEngine
    dispatcher: EventDispatcher
    reconciler: Optional[Reconciler] = None
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: ShipwrightSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Shipwright configuration:")
    logger.info(f"  Jira Base URL: {settings.jira_base_url}")
    logger.info(f"  Jira Project: {settings.jira_project_key}")
    logger.info(f"  Jira API Token: {_redact_secret(settings.jira_api_token)}")
    logger.info(f"  Jira Bot Account: {settings.jira_bot_account_id or '<unset>'}")
    logger.info(f"  GitHub Repository: {settings.github_owner}/{settings.github_repo}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  CI Workflow: {settings.ci_workflow or '<disabled>'}")
    logger.info(f"  Repo Path: {settings.repo_path}")
    logger.info(f"  Worktree Base Path: {settings.resolved_worktree_base_path}")
    logger.info(
        f"  Branches: production={settings.production_branch} "
        f"staging={settings.staging_branch}"
    )
    logger.info(f"  Max Concurrent Tasks: {settings.max_concurrent_tasks}")
    logger.info(f"  Reconciliation Interval: {settings.reconciliation_interval_seconds}s")
    logger.info(f"  Anthropic API Key: {_redact_secret(settings.anthropic_api_key)}")
    logger.info(f"  Subscription Auth: {settings.use_subscription_auth}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url, visible_chars=12)}")
    logger.info(f"  Teams Notifications: {'enabled' if settings.teams_webhook_url else 'disabled'}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def _build_emitter(settings: ShipwrightSettings) -> EventEmitter:
    emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS],
        logger_name="shipwright.events",
    )
    if settings.teams_webhook_url:
        notifier = TeamsNotifier(
            settings.teams_webhook_url, settings.enabled_notification_events
        )
        emitter = CompositeEventEmitter([emitter, notifier])
    return emitter


async def start_runtime(settings: ShipwrightSettings) -> Runtime:
    """Build, recover and start every component.

    Returns:
        The running Runtime; pass it to stop_runtime() on shutdown.
    """
    store = create_task_store(settings.database_url)
    await store.connect()
    machine = TaskStateMachine(store)

    jira = JiraClient(
        settings.jira_base_url,
        settings.jira_email,
        settings.jira_api_token,
        settings.jira_project_key,
        bot_account_id=settings.jira_bot_account_id,
        bot_label=settings.jira_bot_label,
        ready_status=settings.jira_ready_status,
        done_status=settings.jira_done_status,
    )
    github = GitHubClient(
        settings.github_token,
        settings.github_owner,
        settings.github_repo,
        base_url=settings.github_base_url,
    )

    workspaces = WorkspaceManager(
        WorkspaceConfig(
            repo_path=Path(settings.repo_path),
            base_path=Path(settings.resolved_worktree_base_path),
            production_branch=settings.production_branch,
            staging_branch=settings.staging_branch,
            branch_prefix=settings.branch_prefix,
        ),
        GitRunner(timeout=settings.git_timeout_seconds),
    )
    await workspaces.prune()

    agent = AgentRunner(
        settings.repo_path,
        plan_limits=AgentLimits(
            max_turns=settings.agent_max_turns_plan,
            max_budget_usd=settings.agent_max_budget_plan_usd,
            timeout_seconds=settings.agent_plan_timeout_seconds,
        ),
        write_limits=AgentLimits(
            max_turns=settings.agent_max_turns_implement,
            max_budget_usd=settings.agent_max_budget_implement_usd,
            timeout_seconds=settings.agent_timeout_seconds,
        ),
        model=settings.agent_model,
        api_key=settings.anthropic_api_key,
        use_subscription_auth=settings.use_subscription_auth,
    )
    recovery = RecoveryLoop(
        github,
        agent,
        workspaces,
        settings.ci_workflow,
        staging_branch=settings.staging_branch,
        max_retries=settings.ci_max_fix_retries,
        run_timeout=settings.ci_run_timeout_seconds,
        appear_timeout=settings.ci_run_appear_timeout_seconds,
    )

    metrics = get_metrics()
    emitter = _build_emitter(settings)
    engine = OrchestrationEngine(
        machine=machine,
        guard=ConcurrencyGuard(settings.max_concurrent_tasks),
        tracker=jira,
        hosting=github,
        agent=agent,
        workspaces=workspaces,
        recovery=recovery,
        event_emitter=emitter,
        options=EngineOptions(
            approval_keyword=settings.approval_keyword,
            in_progress_status=settings.jira_in_progress_status,
            review_status=settings.jira_review_status,
            production_branch=settings.production_branch,
            human_account_id=settings.jira_human_account_id,
        ),
    )
    await engine.recover_interrupted()

    dispatcher = EventDispatcher(
        engine.handle_event,
        maxsize=settings.webhook_queue_size,
        workers=settings.webhook_workers,
        metrics=metrics,
    )
    dispatcher.start()

    reconciler = Reconciler(
        engine, jira, interval=settings.reconciliation_interval_seconds, metrics=metrics
    )
    reconciler.start()

    return Runtime(
        settings=settings,
        engine=engine,
        dispatcher=dispatcher,
        reconciler=reconciler,
        closers=[
            workspaces.destroy_all,
            emitter.close,
            jira.close,
            github.close,
            store.disconnect,
        ],
    )


async def stop_runtime(runtime: Runtime) -> None:
    """Stop polling, drain queued events, then release resources in order."""
    if runtime.reconciler is not None:
        await runtime.reconciler.stop(timeout=runtime.settings.shutdown_drain_seconds)
    await runtime.dispatcher.stop(timeout=runtime.settings.shutdown_drain_seconds)
    for close in runtime.closers:
        try:
            await close()
        except Exception:
            logger.exception("Shutdown step failed", extra={"step": getattr(close, "__qualname__", None)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    logger.info("Shipwright starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    _log_configuration(settings)

    app.state.runtime = await start_runtime(settings)
    logger.info("Shipwright started successfully")

    yield

    logger.info("Shipwright shutting down...")
    await stop_runtime(app.state.runtime)
    logger.info("Shipwright shutdown complete")


def _runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Shipwright not initialized")
    return runtime


def _decode(body: bytes) -> Optional[Any]:
    try:
        return json.loads(body)
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return None


def _enqueue(runtime: Runtime, event: Optional[TriggerEvent]):
    if event is None:
        return {"received": True, "queued": False}
    if not runtime.dispatcher.submit(event):
        return JSONResponse(
            status_code=503,
            content={"received": True, "queued": False, "error": "queue full"},
        )
    return {"received": True, "queued": True}


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(
        title="Shipwright",
        description="Issue-to-production orchestration for Jira, Claude and GitHub",
        version="0.1.0",
        lifespan=lifespan_handler,
    )

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "ok", "timestamp": utcnow().isoformat()}

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/status")
    async def status(request: Request):
        """Task and admission summary, guarded by a bearer token."""
        runtime = _runtime(request)
        expected = runtime.settings.status_token
        supplied = request.headers.get("Authorization", "")
        if not expected or not hmac.compare_digest(supplied, f"Bearer {expected}"):
            raise HTTPException(status_code=403, detail="Forbidden")

        snapshot = await runtime.engine.status_snapshot()
        last_run = runtime.reconciler.last_run_at if runtime.reconciler else None
        snapshot["queue_depth"] = runtime.dispatcher.depth
        snapshot["last_reconciliation_at"] = last_run.isoformat() if last_run else None
        return snapshot

    @app.post("/webhooks/jira")
    async def jira_webhook(request: Request):
        """Jira webhook receiver; signed with X-Hub-Signature."""
        runtime = _runtime(request)
        body = await request.body()
        if not verify_signature(
            runtime.settings.jira_webhook_secret, body, request.headers.get("X-Hub-Signature")
        ):
            logger.warning("Rejected Jira webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        payload = _decode(body)
        event = jira_parser.parse(payload) if payload is not None else None
        return _enqueue(runtime, event)

    @app.post("/webhooks/github")
    async def github_webhook(request: Request):
        """GitHub webhook receiver; signed with X-Hub-Signature-256."""
        runtime = _runtime(request)
        body = await request.body()
        if not verify_signature(
            runtime.settings.github_webhook_secret,
            body,
            request.headers.get("X-Hub-Signature-256"),
        ):
            logger.warning("Rejected GitHub webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        payload = _decode(body)
        event = (
            github_parser.parse(request.headers.get("X-GitHub-Event"), payload)
            if payload is not None
            else None
        )
        return _enqueue(runtime, event)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.shipwright.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        log_level=dev_settings.log_level.lower(),
    )
