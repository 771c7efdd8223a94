"""Unit tests for observability features (structured logging, metrics)."""

import json
import logging
import sys

import pytest

from signup_core.observability.logging import (
    JsonFormatter,
    RunContext,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from signup_core.observability.metrics import MetricsCollector, get_collector


def make_record(level=logging.INFO, msg="Test message", args=(), exc_info=None):
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestJsonFormatter:
    """Tests for JSON log formatter."""

    def test_format_basic_log_record(self):
        """Test formatting a basic log record to JSON."""
        parsed = json.loads(JsonFormatter().format(make_record()))

        assert parsed["message"] == "Test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert parsed["service"] == "signup"
        assert "T" in parsed["timestamp"]
        assert "source" not in parsed

    def test_service_name(self):
        parsed = json.loads(JsonFormatter(service_name="signup-worker").format(make_record()))

        assert parsed["service"] == "signup-worker"

    def test_extra_fields_are_included(self):
        """Test that fields passed through ``extra`` become top-level keys."""
        record = make_record()
        record.registration_id = "reg-1"
        record.hostname = "app.jackrabbitclass.com"

        parsed = json.loads(JsonFormatter().format(record))

        assert parsed["registration_id"] == "reg-1"
        assert parsed["hostname"] == "app.jackrabbitclass.com"

    def test_unserializable_extra_is_stringified(self):
        record = make_record()
        record.candidate = object()

        parsed = json.loads(JsonFormatter().format(record))

        assert parsed["candidate"].startswith("<object object")

    def test_warning_carries_source(self):
        parsed = json.loads(JsonFormatter().format(make_record(level=logging.WARNING)))

        assert parsed["source"]["file"] == "test.py"
        assert parsed["source"]["line"] == 42

    def test_format_log_with_exception(self):
        """Test formatting log record with exception info."""
        try:
            raise ValueError("Reserve exploded")
        except ValueError:
            exc_info = sys.exc_info()

        parsed = json.loads(
            JsonFormatter().format(make_record(level=logging.ERROR, exc_info=exc_info))
        )

        assert parsed["level"] == "ERROR"
        assert "ValueError: Reserve exploded" in parsed["exception"]

    def test_format_log_with_message_args(self):
        record = make_record(msg="Run %s finished as %s", args=("reg-1", "confirmed"))

        parsed = json.loads(JsonFormatter().format(record))

        assert parsed["message"] == "Run reg-1 finished as confirmed"


class TestRunContext:
    """Tests for the registration run context."""

    def test_to_dict_skips_empty_fields(self):
        context = RunContext(user_id="parent-1", registration_id="reg-1")

        assert context.to_dict() == {"user_id": "parent-1", "registration_id": "reg-1"}

    def test_extra_is_merged(self):
        context = RunContext(
            hostname="app.jackrabbitclass.com",
            platform="jackrabbit_class",
            extra={"stage": "reserve"},
        )

        result = context.to_dict()

        assert result["hostname"] == "app.jackrabbitclass.com"
        assert result["platform"] == "jackrabbit_class"
        assert result["stage"] == "reserve"


class TestStructuredLogger:
    """Tests for structured logger."""

    def test_context_and_fields_reach_the_record(self, caplog):
        logger = StructuredLogger("signup.test")
        context = RunContext(user_id="parent-1", session_id="sess-1")

        with caplog.at_level(logging.INFO, logger="signup.test"):
            logger.info("Reserve finished", context=context, outcome="waitlisted")

        record = caplog.records[-1]
        assert record.getMessage() == "Reserve finished"
        assert record.user_id == "parent-1"
        assert record.session_id == "sess-1"
        assert record.outcome == "waitlisted"

    def test_error_with_exception(self, caplog):
        logger = StructuredLogger("signup.test")

        with caplog.at_level(logging.ERROR, logger="signup.test"):
            try:
                raise RuntimeError("provider down")
            except RuntimeError:
                logger.error("Adapter raised", exc_info=True, stage="reserve")

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.exc_info is not None
        assert record.stage == "reserve"

    def test_debug_is_filtered_at_info(self, caplog):
        logger = StructuredLogger("signup.test")

        with caplog.at_level(logging.INFO, logger="signup.test"):
            logger.debug("Noise")

        assert caplog.records == []

    def test_get_logger_same_name_returns_same_instance(self):
        assert get_logger("signup.same") is get_logger("signup.same")
        assert get_logger("signup.one") is not get_logger("signup.two")


class TestConfigureLogging:
    """Tests for logging configuration."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_handler_installed(self):
        configure_logging(level="DEBUG", service_name="signup-core")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        formatter = root.handlers[0].formatter
        assert isinstance(formatter, JsonFormatter)
        assert formatter.service_name == "signup-core"

    def test_plain_text_format(self):
        configure_logging(level="warning", json_format=False)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_increment_counter_with_labels(self):
        collector = MetricsCollector()

        collector.increment("registration_runs_total", labels={"outcome": "confirmed"})
        collector.increment("registration_runs_total", labels={"outcome": "confirmed"})
        collector.increment("registration_runs_total", labels={"outcome": "waitlisted"})

        assert collector.get("registration_runs_total", labels={"outcome": "confirmed"}) == 2
        assert collector.get("registration_runs_total", labels={"outcome": "waitlisted"}) == 1

    def test_label_order_does_not_matter(self):
        collector = MetricsCollector()

        collector.increment("notifications_delivered_total", labels={"method": "sms", "result": "ok"})

        assert collector.get(
            "notifications_delivered_total", labels={"result": "ok", "method": "sms"}
        ) == 1

    def test_unknown_metric_is_zero(self):
        assert MetricsCollector().get("never_recorded") == 0

    def test_gauge_overwrites(self):
        collector = MetricsCollector()

        collector.set_gauge("locks_held", 3)
        collector.set_gauge("locks_held", 1)

        assert collector.get("locks_held") == 1

    def test_histogram_stats(self):
        collector = MetricsCollector()
        for value in (0.5, 1.0, 0.3):
            collector.record_histogram("registration_run_seconds", value)

        stats = collector.get_histogram_stats("registration_run_seconds")

        assert stats["count"] == 3
        assert stats["min"] == 0.3
        assert stats["max"] == 1.0
        assert stats["avg"] == pytest.approx(0.6)
        assert stats["p50"] == 0.5

    def test_empty_histogram(self):
        assert MetricsCollector().get_histogram_stats("nothing")["count"] == 0

    def test_timer_records_duration(self):
        collector = MetricsCollector()

        with collector.timer("registration_run_seconds", labels={"platform": "jackrabbit_class"}):
            pass

        stats = collector.get_histogram_stats(
            "registration_run_seconds", labels={"platform": "jackrabbit_class"}
        )
        assert stats["count"] == 1
        assert stats["min"] >= 0

    def test_timer_records_on_error(self):
        collector = MetricsCollector()

        with pytest.raises(RuntimeError):
            with collector.timer("registration_run_seconds"):
                raise RuntimeError("boom")

        assert collector.get_histogram_stats("registration_run_seconds")["count"] == 1

    def test_get_all_and_reset(self):
        collector = MetricsCollector()
        collector.increment("runs")
        collector.set_gauge("locks_held", 2)
        collector.record_histogram("latency", 0.1)

        snapshot = collector.get_all()
        assert snapshot["counters"] == {"runs": 1}
        assert snapshot["gauges"] == {"locks_held": 2}
        assert snapshot["histograms"]["latency"]["count"] == 1

        collector.reset()
        assert collector.get_all() == {"counters": {}, "gauges": {}, "histograms": {}}

    def test_process_collector_is_shared(self):
        assert get_collector() is get_collector()
