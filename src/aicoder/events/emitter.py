"""Where pipeline events go.

The executor and state machine only see ``EventEmitter``. The app wires
a composite of the logging sink and the Prometheus sink
(``MetricsEventEmitter`` in ``metrics.py``).
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable, List, Optional

from src.aicoder.events.models import EventType, PipelineEvent

if TYPE_CHECKING:
    from src.aicoder.events.metrics import PipelineMetrics


logger = logging.getLogger(__name__)

EVENT_LOG_LEVELS = {
    EventType.STATE_TRANSITION: logging.INFO,
    EventType.COMPLETION: logging.INFO,
    EventType.TIMEOUT: logging.WARNING,
    EventType.ERROR: logging.ERROR,
}


class EventEmitter(ABC):
    """A sink for pipeline events.

    ``emit`` must not raise: a broken sink never fails a change request.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        ...

    async def close(self) -> None:
        pass


class LoggingEventEmitter(EventEmitter):
    """One log record per event; errors at ERROR, timeouts at WARNING."""

    def __init__(self, logger_name: Optional[str] = None):
        self._log = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: PipelineEvent) -> None:
        self._log.log(
            EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "Change request %s: %s",
            event.request_id,
            event.event_type.value,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans each event out to every child, isolating child failures."""

    def __init__(self, emitters: Optional[Iterable[EventEmitter]] = None):
        self._children: List[EventEmitter] = list(emitters or [])

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._children)

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._children.append(emitter)

    async def emit(self, event: PipelineEvent) -> None:
        for child in self._children:
            try:
                await child.emit(event)
            except Exception:
                logger.exception(
                    "Event sink %s failed",
                    type(child).__name__,
                    extra={"event_type": event.event_type.value, "request_id": event.request_id},
                )

    async def close(self) -> None:
        for child in self._children:
            try:
                await child.close()
            except Exception:
                logger.exception("Event sink %s failed to close", type(child).__name__)


class NullEventEmitter(EventEmitter):
    async def emit(self, event: PipelineEvent) -> None:
        pass


def create_event_emitter(
    metrics: Optional["PipelineMetrics"] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Logging sink alone, or logging plus Prometheus when ``metrics`` is given."""
    logging_sink = LoggingEventEmitter(logger_name=logger_name)
    if metrics is None:
        return logging_sink

    # metrics.py subclasses EventEmitter, so it is imported late.
    from src.aicoder.events.metrics import MetricsEventEmitter

    return CompositeEventEmitter([logging_sink, MetricsEventEmitter(metrics=metrics)])
