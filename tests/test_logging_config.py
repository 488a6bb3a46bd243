"""
Tests for structured logging
"""

import json
import logging

from ess_bridge.logging_config import JSONFormatter, log_action, setup_logging


class CaptureHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_json_formatter_drops_empty_fields():
    record = logging.LogRecord("ess_bridge.saga", logging.INFO, __file__, 1, "Admitted", None, None)
    record.application_id = "APP-1"
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "Admitted"
    assert entry["logger"] == "ess_bridge.saga"
    assert entry["application_id"] == "APP-1"
    assert "message_type" not in entry
    assert "exception" not in entry


def test_log_action_attaches_fields():
    logger = logging.getLogger("ess_bridge.test_log_action")
    logger.setLevel(logging.DEBUG)
    handler = CaptureHandler()
    logger.addHandler(handler)
    try:
        log_action(logger, "warning", "Answering 8001", application_id="APP-2",
                   message_type="LOAN_OFFER_REQUEST", extra={"code": "8001"})
    finally:
        logger.removeHandler(handler)

    [record] = handler.records
    assert record.levelno == logging.WARNING
    assert record.application_id == "APP-2"
    assert record.message_type == "LOAN_OFFER_REQUEST"
    assert record.extra == {"code": "8001"}
    assert not hasattr(record, "correlation_id")


def test_setup_logging_replaces_handlers():
    logger = setup_logging("DEBUG", logger_name="ess_bridge.test_setup")
    logger = setup_logging("WARNING", logger_name="ess_bridge.test_setup", log_format="text")
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
    assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
    assert logger.propagate is False
