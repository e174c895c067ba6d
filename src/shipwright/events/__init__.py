"""Engine event emission, metrics and notifications.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Emits events as Prometheus metrics
- TeamsNotifier: Posts selected events to Microsoft Teams
- NullEventEmitter: Discards events (for testing)

Metrics:
- ShipwrightMetrics: Container for all Prometheus metrics
- get_metrics: Get or create the metrics instance
- generate_metrics_output: Generate Prometheus format output for /metrics
"""

from src.shipwright.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.shipwright.events.metrics import (
    MetricsEventEmitter,
    ShipwrightMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.shipwright.events.models import EventType, TaskEvent
from src.shipwright.events.notifier import TeamsNotifier, build_message_card

__all__ = [
    # Event models
    "EventType",
    "TaskEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "TeamsNotifier",
    "build_message_card",
    # Metrics
    "ShipwrightMetrics",
    "get_metrics",
    "generate_metrics_output",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
]
