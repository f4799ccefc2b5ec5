"""Unit tests for structured logging."""
import sys
sys.path.insert(0, 'backend')

import json
import logging

from logger import JSONFormatter, setup_logging


def make_record(msg="Turn completed", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord("services.turn_coordinator", level, __file__, 10, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    def test_basic_fields(self):
        """Test the standard fields are present."""
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "services.turn_coordinator"
        assert data["message"] == "Turn completed"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields_merged(self):
        """Test fields passed via extra= appear at the top level."""
        data = json.loads(JSONFormatter().format(make_record(conversation_id="thread_1", job_id="run_1")))

        assert data["conversation_id"] == "thread_1"
        assert data["job_id"] == "run_1"
        assert "args" not in data
        assert "levelno" not in data

    def test_exception_included(self):
        """Test exception tracebacks are serialized."""
        try:
            raise ValueError("bad value")
        except ValueError:
            record = make_record(level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad value" in data["exception"]

    def test_non_serializable_extra(self):
        """Test values json cannot encode are stringified."""
        data = json.loads(JSONFormatter().format(make_record(payload=object())))
        assert data["payload"].startswith("<object object")


class TestSetupLogging:
    """Test suite for setup_logging."""

    def test_replaces_root_handlers(self):
        """Test the root logger ends up with a single JSON handler."""
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging("WARNING")
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.WARNING
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
