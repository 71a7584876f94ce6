import structlog

from infrastructure.observability.logging import MetricsCollector, add_service_context, setup_logging


class TestMetricsCollector:
    def test_latency_summary(self):
        collector = MetricsCollector()
        collector.record_latency("tool", 10.0, tags={"tool": "echo"})
        collector.record_latency("tool", 30.0, tags={"tool": "echo"})

        summary = collector.get_metrics_summary()["latency.tool[tool=echo]"]

        assert summary == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}

    def test_counter_tags_are_order_independent(self):
        collector = MetricsCollector()
        collector.increment_counter("tool_calls", tags={"tool": "a", "success": "true"})
        collector.increment_counter("tool_calls", tags={"success": "true", "tool": "a"})

        assert collector.get_counter("tool_calls", tags={"tool": "a", "success": "true"}) == 2
        assert collector.get_counter("tool_calls") == 0

    def test_gauge_and_reset(self):
        collector = MetricsCollector()
        collector.set_gauge("context_usage", 0.4)
        assert collector.get_metrics_summary() == {"gauge.context_usage": 0.4}

        collector.reset()
        assert collector.get_metrics_summary() == {}


class TestLoggingSetup:
    def test_service_context_binds_run_and_session(self):
        structlog.contextvars.clear_contextvars()
        with structlog.contextvars.bound_contextvars(run_id="r1", session_id="s1"):
            event = add_service_context(None, "info", {"event": "agent_event"})

        assert event["run_id"] == "r1"
        assert event["session_id"] == "s1"
        assert "timestamp" in event

    def test_setup_binds_service_name(self):
        structlog.contextvars.clear_contextvars()
        try:
            setup_logging("DEBUG", "console", service_name="assistant-test")
            assert structlog.contextvars.get_contextvars()["service"] == "assistant-test"
        finally:
            structlog.contextvars.clear_contextvars()
            structlog.reset_defaults()
