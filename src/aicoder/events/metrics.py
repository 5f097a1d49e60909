"""Prometheus metrics for the pipeline.

Metrics:
- aicoder_requests_processed_total: change requests that finished, by result
- aicoder_requests_failed_total: failures, by stage
- aicoder_processing_duration_seconds: execute() wall time
- aicoder_requests_by_status: change requests currently in each status
- aicoder_active_sandboxes: sessions held by the sandbox registry

Each PipelineMetrics owns a registry so that the app and tests never
collide on the process-wide default one.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.aicoder.events.emitter import EventEmitter
from src.aicoder.events.models import EventType, PipelineEvent
from src.aicoder.state.models import STATUS_ORDER


logger = logging.getLogger(__name__)


DEFAULT_DURATION_BUCKETS = (
    5.0,
    15.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
    1800.0,
)


class PipelineMetrics:
    """Container for the pipeline's Prometheus metrics.

    Attributes:
        registry: Registry the metrics are registered in.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.requests_processed_total = Counter(
            "aicoder_requests_processed_total",
            "Change requests that reached a final pipeline outcome",
            labelnames=["result"],
            registry=self.registry,
        )
        self.requests_failed_total = Counter(
            "aicoder_requests_failed_total",
            "Change requests that failed, by pipeline stage",
            labelnames=["stage"],
            registry=self.registry,
        )
        self.processing_duration_seconds = Histogram(
            "aicoder_processing_duration_seconds",
            "Time from change request creation to pull request or failure",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.requests_by_status = Gauge(
            "aicoder_requests_by_status",
            "Change requests currently in each status",
            labelnames=["status"],
            registry=self.registry,
        )
        self.active_sandboxes = Gauge(
            "aicoder_active_sandboxes",
            "Sandbox sessions currently registered",
            registry=self.registry,
        )

        for status in STATUS_ORDER:
            self.requests_by_status.labels(status=status.value).set(0)

    def record_processed(self, success: bool) -> None:
        self.requests_processed_total.labels(result="success" if success else "failure").inc()

    def record_failed(self, stage: str) -> None:
        self.requests_failed_total.labels(stage=stage).inc()

    def record_duration(self, duration_seconds: float) -> None:
        self.processing_duration_seconds.observe(duration_seconds)

    def update_status_count(self, status: str, delta: int) -> None:
        """Move the per-status gauge by ``delta``, never below zero."""
        gauge = self.requests_by_status.labels(status=status)
        current = gauge._value.get()
        gauge.set(max(0, current + delta))

    def set_active_sandboxes(self, count: int) -> None:
        self.active_sandboxes.set(max(0, count))

    def generate_latest(self) -> bytes:
        """Prometheus text exposition for ``/metrics``."""
        return generate_latest(self.registry)


class MetricsEventEmitter(EventEmitter):
    """Updates PipelineMetrics from pipeline events.

    - STATE_TRANSITION: moves the per-status gauge
    - ERROR: counts a failure at the event's stage
    - COMPLETION: counts a success and records duration
    - TIMEOUT: counts a failure at stage ``timeout``
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else PipelineMetrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                self._handle_state_transition(event)
            elif event.event_type == EventType.ERROR:
                self._handle_error(event)
            elif event.event_type == EventType.COMPLETION:
                self._handle_completion(event)
            elif event.event_type == EventType.TIMEOUT:
                self._metrics.record_failed("timeout")
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "request_id": event.request_id},
            )

    def _handle_state_transition(self, event: PipelineEvent) -> None:
        from_status = event.details.get("from_status")
        to_status = event.details.get("to_status")
        if from_status:
            self._metrics.update_status_count(from_status, -1)
        if to_status:
            self._metrics.update_status_count(to_status, +1)

    def _handle_error(self, event: PipelineEvent) -> None:
        self._metrics.record_failed(event.details.get("stage", "unknown"))
        self._metrics.record_processed(success=False)
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_duration(float(duration))

    def _handle_completion(self, event: PipelineEvent) -> None:
        self._metrics.record_processed(success=True)
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_duration(float(duration))
