"""Tests for structured logging."""

import json
import logging
import threading

import pytest

from fleetform.utils.logging import (
    ConsoleFormatter,
    ContextFilter,
    JSONFormatter,
    LogContext,
    get_logger,
    setup_logging,
)


class Collector(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []
        self.addFilter(ContextFilter())

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def collector():
    handler = Collector()
    logger = get_logger("fleetform.test")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield handler
    logger.removeHandler(handler)


class TestLogContext:
    """Test fields added for a block of work."""

    def test_fields_added_inside_block_only(self, collector):
        logger = get_logger("fleetform.test")

        with LogContext(logger, operation="apply"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = collector.records
        assert inside.operation == "apply"
        assert not hasattr(outside, "operation")

    def test_extra_wins_over_context(self, collector):
        logger = get_logger("fleetform.test")

        with LogContext(logger, operation="apply", resource_id="run"):
            logger.info("step", extra={"operation": "create", "resource_id": "listener.http"})

        [record] = collector.records
        assert record.operation == "create"
        assert record.resource_id == "listener.http"

    def test_nested_contexts_restore(self, collector):
        logger = get_logger("fleetform.test")

        with LogContext(logger, operation="deploy"):
            with LogContext(logger, resource_id="target-group.asg"):
                logger.info("nested")
            logger.info("outer")

        nested, outer = collector.records
        assert (nested.operation, nested.resource_id) == ("deploy", "target-group.asg")
        assert outer.operation == "deploy"
        assert not hasattr(outer, "resource_id")

    def test_other_threads_are_unaffected(self, collector):
        logger = get_logger("fleetform.test")

        with LogContext(logger, operation="apply"):
            worker = threading.Thread(target=logger.info, args=("from worker",))
            worker.start()
            worker.join()

        [record] = collector.records
        assert not hasattr(record, "operation")


class TestFormatters:
    """Test console and JSON output."""

    def make_record(self, **extra):
        record = logging.LogRecord("fleetform.x", logging.WARNING, __file__, 1, "drained %s", ("i-1",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_includes_structured_fields(self):
        line = JSONFormatter().format(self.make_record(member_id="i-1", operation="drain"))

        data = json.loads(line)
        assert data["message"] == "drained i-1"
        assert data["level"] == "WARNING"
        assert data["member_id"] == "i-1"
        assert data["operation"] == "drain"
        assert "resource_id" not in data

    def test_console_prefixes_subject(self):
        line = ConsoleFormatter(color=False).format(self.make_record(resource_id="autoscaling-group.web"))

        assert line.endswith("WARNING  [autoscaling-group.web] drained i-1")


class TestSetupLogging:
    """Test handler installation."""

    def test_console_only(self):
        assert setup_logging("warning", None) is None

        [handler] = logging.getLogger().handlers
        assert handler.level == logging.WARNING

    def test_file_receives_debug_records(self, tmp_path):
        log_file = setup_logging("error", str(tmp_path / "logs"))

        get_logger("fleetform.test").debug("quiet detail", extra={"resource_id": "security-group.web"})
        for handler in logging.getLogger().handlers:
            handler.flush()

        [line] = log_file.read_text().splitlines()
        assert json.loads(line)["resource_id"] == "security-group.web"
        assert log_file.name.startswith("fleetform-")

    def test_library_noise_reduced(self):
        setup_logging("debug", None)

        assert logging.getLogger("botocore").level == logging.WARNING
