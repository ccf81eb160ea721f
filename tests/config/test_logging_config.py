"""
Tests for Logging Config
"""

import json
import logging

import pytest

from dream_billing.config import logging_config
from dream_billing.config.logging_config import (
    RequestIDFilter,
    StructuredFormatter,
    configure_logging,
    request_id_var,
)


def make_record(message="Subscription sweep finished", exc_info=None):
    return logging.LogRecord(
        name="dream_billing.services.reconciliation",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=exc_info,
    )


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestRequestIDFilter:
    """Test request id stamping"""

    def test_outside_request(self):
        record = make_record()

        assert RequestIDFilter().filter(record) is True
        assert record.request_id == "-"

    def test_inside_request(self):
        token = request_id_var.set("req_0123456789ab")
        try:
            record = make_record()
            RequestIDFilter().filter(record)
        finally:
            request_id_var.reset(token)

        assert record.request_id == "req_0123456789ab"


class TestStructuredFormatter:
    """Test JSON log lines"""

    def test_basic_fields(self):
        record = make_record()
        record.request_id = "req_abc"

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "dream_billing.services.reconciliation"
        assert data["message"] == "Subscription sweep finished"
        assert data["request_id"] == "req_abc"

    def test_placeholder_request_id_is_omitted(self):
        record = make_record()
        record.request_id = "-"

        assert "request_id" not in json.loads(StructuredFormatter().format(record))

    def test_exception_is_included(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            import sys

            record = make_record(exc_info=sys.exc_info())

        data = json.loads(StructuredFormatter().format(record))

        assert "ValueError: bad payload" in data["exception"]


class TestConfigureLogging:
    """Test root logger setup"""

    def test_json_outside_development(self, restore_root_logger, monkeypatch):
        monkeypatch.setattr(logging_config.Config, "IS_DEVELOPMENT", False)

        configure_logging("debug")

        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("stripe").level == logging.WARNING

    def test_plain_text_in_development(self, restore_root_logger, monkeypatch):
        monkeypatch.setattr(logging_config.Config, "IS_DEVELOPMENT", True)

        configure_logging("INFO")

        formatter = restore_root_logger.handlers[0].formatter
        assert not isinstance(formatter, StructuredFormatter)
        assert "%(request_id)s" in formatter._fmt
