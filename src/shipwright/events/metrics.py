"""Prometheus metrics for engine observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- shipwright_phase_transitions_total: Counter of phase transitions
- shipwright_task_failures_total: Counter of failed tasks by error category
- shipwright_merges_total: Counter of pull requests merged to production
- shipwright_agent_invocations_total: Counter of agent runs by kind and result
- shipwright_agent_cost_usd_total: Counter of agent spend
- shipwright_merge_conflicts_total: Counter of staging merge conflicts
- shipwright_ci_results_total: Counter of staging CI validations by status
- shipwright_ci_fix_attempts_total: Counter of agent-assisted CI fix cycles
- shipwright_tasks_by_phase: Gauge of tracked tasks per phase
- shipwright_webhook_queue_depth: Gauge of queued webhook events

MetricsEventEmitter updates the counters from engine events; the gauges are
set directly by the reconciler and the webhook dispatcher.
"""

import logging
from typing import Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from src.shipwright.events.emitter import EventEmitter
from src.shipwright.events.models import EventType, TaskEvent
from src.shipwright.state.models import TaskPhase


logger = logging.getLogger(__name__)


class ShipwrightMetrics:
    """Container for all Prometheus metrics.

    Pass a custom registry for testing; the default registry only ever gets
    one instance, through get_metrics().

    Example:
        >>> metrics = ShipwrightMetrics(registry=CollectorRegistry())
        >>> metrics.record_transition("approved", "implementing")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.phase_transitions_total = Counter(
            "shipwright_phase_transitions_total",
            "Total number of task phase transitions",
            labelnames=["from_phase", "to_phase"],
            registry=self.registry,
        )

        self.task_failures_total = Counter(
            "shipwright_task_failures_total",
            "Total number of tasks that failed",
            labelnames=["category"],
            registry=self.registry,
        )

        self.merges_total = Counter(
            "shipwright_merges_total",
            "Total number of pull requests merged to production",
            registry=self.registry,
        )

        self.agent_invocations_total = Counter(
            "shipwright_agent_invocations_total",
            "Total number of coding agent runs",
            labelnames=["kind", "result"],
            registry=self.registry,
        )

        self.agent_cost_usd_total = Counter(
            "shipwright_agent_cost_usd_total",
            "Total coding agent spend in USD",
            registry=self.registry,
        )

        self.merge_conflicts_total = Counter(
            "shipwright_merge_conflicts_total",
            "Total number of conflicting merges into staging",
            registry=self.registry,
        )

        self.ci_results_total = Counter(
            "shipwright_ci_results_total",
            "Total number of staging CI validations",
            labelnames=["status"],
            registry=self.registry,
        )

        self.ci_fix_attempts_total = Counter(
            "shipwright_ci_fix_attempts_total",
            "Total number of agent-assisted CI fix cycles",
            registry=self.registry,
        )

        self.tasks_by_phase = Gauge(
            "shipwright_tasks_by_phase",
            "Current number of tracked tasks in each phase",
            labelnames=["phase"],
            registry=self.registry,
        )

        self.webhook_queue_depth = Gauge(
            "shipwright_webhook_queue_depth",
            "Webhook events waiting to be processed",
            registry=self.registry,
        )

        for phase in TaskPhase:
            self.tasks_by_phase.labels(phase=phase.value).set(0)

    def record_transition(self, from_phase: str, to_phase: str) -> None:
        self.phase_transitions_total.labels(from_phase=from_phase, to_phase=to_phase).inc()

    def record_failure(self, category: str) -> None:
        self.task_failures_total.labels(category=category).inc()

    def record_agent_run(self, kind: str, success: bool, cost_usd: float) -> None:
        result = "success" if success else "failure"
        self.agent_invocations_total.labels(kind=kind, result=result).inc()
        if cost_usd > 0:
            self.agent_cost_usd_total.inc(cost_usd)

    def record_ci_result(self, status: str, fix_attempts: int) -> None:
        self.ci_results_total.labels(status=status).inc()
        if fix_attempts > 0:
            self.ci_fix_attempts_total.inc(fix_attempts)

    def set_phase_counts(self, counts: Dict[str, int]) -> None:
        """Set the tasks-by-phase gauge; phases missing from counts become 0."""
        for phase in TaskPhase:
            self.tasks_by_phase.labels(phase=phase.value).set(
                max(0, counts.get(phase.value, 0))
            )

    def set_queue_depth(self, depth: int) -> None:
        self.webhook_queue_depth.set(max(0, depth))


_default_metrics: Optional[ShipwrightMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> ShipwrightMetrics:
    """Get the metrics instance for the default registry, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return ShipwrightMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = ShipwrightMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus counters.

    - STATE_TRANSITION: phase_transitions_total
    - ERROR: task_failures_total by category
    - MERGED: merges_total
    - AGENT_INVOCATION: agent_invocations_total and agent_cost_usd_total
    - MERGE_CONFLICT: merge_conflicts_total
    - CI_RESULT: ci_results_total and ci_fix_attempts_total
    """

    def __init__(
        self,
        metrics: Optional[ShipwrightMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> ShipwrightMetrics:
        return self._metrics

    async def emit(self, event: TaskEvent) -> None:
        details = event.details
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                self._metrics.record_transition(
                    str(details.get("from_phase", "none")),
                    str(details.get("to_phase", "unknown")),
                )
            elif event.event_type == EventType.ERROR:
                self._metrics.record_failure(str(details.get("category", "permanent")))
            elif event.event_type == EventType.MERGED:
                self._metrics.merges_total.inc()
            elif event.event_type == EventType.AGENT_INVOCATION:
                self._metrics.record_agent_run(
                    str(details.get("kind", "unknown")),
                    bool(details.get("success")),
                    float(details.get("cost_usd") or 0.0),
                )
            elif event.event_type == EventType.MERGE_CONFLICT:
                self._metrics.merge_conflicts_total.inc()
            elif event.event_type == EventType.CI_RESULT:
                self._metrics.record_ci_result(
                    str(details.get("status", "unknown")),
                    int(details.get("fix_attempts") or 0),
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "issue_key": event.issue_key},
            )
