"""Unit tests for pipeline event emitters and Prometheus metrics."""

import asyncio
import logging
from unittest.mock import AsyncMock

from src.aicoder.events import (
    CompositeEventEmitter,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    NullEventEmitter,
    PipelineEvent,
    PipelineMetrics,
    create_event_emitter,
)


def run_async(coro):
    return asyncio.run(coro)


def _make_event(event_type: EventType = EventType.STATE_TRANSITION, **details) -> PipelineEvent:
    return PipelineEvent(
        event_type=event_type,
        request_id="cr-1",
        repository="acme/widgets",
        details=details,
    )


class TestLoggingEventEmitter:
    def test_error_events_log_at_error(self, caplog):
        emitter = LoggingEventEmitter(logger_name="test.events")
        with caplog.at_level(logging.INFO, logger="test.events"):
            run_async(emitter.emit(_make_event(EventType.ERROR, stage="push")))

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.request_id == "cr-1"
        assert record.stage == "push"

    def test_timeout_events_log_at_warning(self, caplog):
        emitter = LoggingEventEmitter(logger_name="test.events")
        with caplog.at_level(logging.INFO, logger="test.events"):
            run_async(emitter.emit(_make_event(EventType.TIMEOUT, stage="agent")))

        assert caplog.records[-1].levelno == logging.WARNING


class TestCompositeEventEmitter:
    def test_failing_child_does_not_stop_others(self):
        broken = AsyncMock()
        broken.emit.side_effect = RuntimeError("sink down")
        healthy = AsyncMock()
        composite = CompositeEventEmitter([broken, healthy])

        run_async(composite.emit(_make_event()))

        broken.emit.assert_awaited_once()
        healthy.emit.assert_awaited_once()

    def test_add_emitter(self):
        composite = CompositeEventEmitter()
        composite.add_emitter(NullEventEmitter())
        assert len(composite.emitters) == 1


class TestCreateEventEmitter:
    def test_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_with_metrics(self):
        metrics = PipelineMetrics()

        emitter = create_event_emitter(metrics=metrics)

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [LoggingEventEmitter, MetricsEventEmitter]
        assert emitter.emitters[1].metrics is metrics


class TestMetrics:
    def test_state_transitions_move_status_gauge(self):
        metrics = PipelineMetrics()
        emitter = MetricsEventEmitter(metrics=metrics)

        async def scenario():
            await emitter.emit(_make_event(to_status="pending"))
            await emitter.emit(_make_event(from_status="pending", to_status="provisioning"))

        run_async(scenario())

        sample = metrics.registry.get_sample_value
        assert sample("aicoder_requests_by_status", {"status": "pending"}) == 0
        assert sample("aicoder_requests_by_status", {"status": "provisioning"}) == 1

    def test_status_gauge_never_negative(self):
        metrics = PipelineMetrics()
        metrics.update_status_count("failed", -1)
        assert metrics.registry.get_sample_value(
            "aicoder_requests_by_status", {"status": "failed"}
        ) == 0

    def test_errors_and_completions(self):
        metrics = PipelineMetrics()
        emitter = MetricsEventEmitter(metrics=metrics)

        async def scenario():
            await emitter.emit(_make_event(EventType.ERROR, stage="agent", duration_seconds=12.5))
            await emitter.emit(_make_event(EventType.COMPLETION, duration_seconds=40))
            await emitter.emit(_make_event(EventType.TIMEOUT))

        run_async(scenario())

        sample = metrics.registry.get_sample_value
        assert sample("aicoder_requests_failed_total", {"stage": "agent"}) == 1
        assert sample("aicoder_requests_failed_total", {"stage": "timeout"}) == 1
        assert sample("aicoder_requests_processed_total", {"result": "failure"}) == 1
        assert sample("aicoder_requests_processed_total", {"result": "success"}) == 1
        assert sample("aicoder_processing_duration_seconds_count") == 2
        assert sample("aicoder_processing_duration_seconds_sum") == 52.5

    def test_active_sandboxes_and_exposition(self):
        metrics = PipelineMetrics()
        metrics.set_active_sandboxes(3)
        metrics.set_active_sandboxes(-1)

        assert metrics.registry.get_sample_value("aicoder_active_sandboxes") == 0
        assert b"aicoder_active_sandboxes" in metrics.generate_latest()

    def test_separate_instances_do_not_collide(self):
        first = PipelineMetrics()
        second = PipelineMetrics()
        first.record_failed("push")
        assert second.registry.get_sample_value(
            "aicoder_requests_failed_total", {"stage": "push"}
        ) is None
