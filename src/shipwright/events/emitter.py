"""Event emitter implementations for engine observability.

Sinks defined here:

- LoggingEventEmitter: one log line per task event, details in extra=
- CompositeEventEmitter: fans a task event out to several sinks
- NullEventEmitter: drops everything

Metrics (metrics.py) and Teams notifications (notifier.py) implement the
same interface. The engine only ever sees a single EventEmitter.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.shipwright.events.models import EventType, TaskEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks built by create_event_emitter.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Sink for task events.

    emit() runs on the engine's event loop and should not block it. The
    engine logs and drops anything a sink raises.
    """

    @abstractmethod
    async def emit(self, event: TaskEvent) -> None:
        """Emit a task event.

        Args:
            event: The task event to emit.
        """
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes each task event to a logger.

    Errors and merge conflicts are logged at WARNING or ERROR, everything
    else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.ERROR: logging.ERROR,
            EventType.MERGE_CONFLICT: logging.WARNING,
        }

    async def emit(self, event: TaskEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Task event: %s for %s",
            event.event_type.value,
            event.issue_key,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Forwards each task event to every child sink.

    Each child is called independently; a failing child is logged and does
    not stop delivery to the others.

    Example:
        >>> composite = CompositeEventEmitter([LoggingEventEmitter(), MetricsEventEmitter()])
        >>> await composite.emit(event)
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: TaskEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "issue_key": event.issue_key,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: TaskEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an emitter for the requested sinks.

    Args:
        sink_types: Sinks to enable. If None or empty, returns a
                    LoggingEventEmitter.
        logger_name: Optional logger name for the LoggingEventEmitter.

    Returns:
        A single emitter, or a CompositeEventEmitter for several sinks.

    Example:
        >>> emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # metrics.py imports this module
            from src.shipwright.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
