"""Pipeline event emission and Prometheus metrics."""

from src.aicoder.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.aicoder.events.metrics import MetricsEventEmitter, PipelineMetrics
from src.aicoder.events.models import EventType, PipelineEvent

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventType",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "PipelineEvent",
    "PipelineMetrics",
    "create_event_emitter",
]
