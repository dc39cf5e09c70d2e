from __future__ import annotations

import io
import json
import logging
import sys
from decimal import Decimal

from stock_ledger.exceptions import NegativeStockError
from stock_ledger.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


def _record(msg="event", **extra):
    record = logging.LogRecord("stock_ledger.test", logging.INFO, __file__, 1, msg, (), None)
    for key, val in extra.items():
        setattr(record, key, val)
    return record


def test_formatter_emits_json_with_extra_fields():
    line = StructuredFormatter().format(_record("stock_applied", quantity=5, cost=Decimal("2.5000")))
    payload = json.loads(line)

    assert payload["message"] == "stock_applied"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "stock_ledger.test"
    assert payload["quantity"] == 5
    assert payload["cost"] == "2.5000"


def test_context_fields_are_merged_and_restored():
    formatter = StructuredFormatter()
    with LogContext.bind(request_id="req-1", actor_id="alice"):
        with LogContext.bind(reference_id="ADJ-1"):
            payload = json.loads(formatter.format(_record()))
        assert LogContext.get_all() == {"request_id": "req-1", "actor_id": "alice"}

    assert payload["request_id"] == "req-1"
    assert payload["actor_id"] == "alice"
    assert payload["reference_id"] == "ADJ-1"
    assert LogContext.get_all() == {}


def test_exception_code_is_logged():
    try:
        raise NegativeStockError(1, None, 2, -5)
    except NegativeStockError:
        record = logging.LogRecord("stock_ledger.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    payload = json.loads(StructuredFormatter().format(record))

    assert payload["exc_type"] == "NegativeStockError"
    assert payload["exc_code"] == "NEGATIVE_STOCK"
    assert "Traceback" in payload["traceback"]


def test_get_logger_namespaces_under_package():
    assert get_logger("services.ledger").name == "stock_ledger.services.ledger"
    assert get_logger("stock_ledger.db").name == "stock_ledger.db"


def test_configure_logging_is_idempotent():
    reset_logging()
    stream = io.StringIO()
    try:
        configure_logging(stream=stream)
        configure_logging(stream=stream)
        assert len(logging.getLogger("stock_ledger").handlers) == 1

        get_logger("check").info("hello", extra={"answer": 42})
        payload = json.loads(stream.getvalue().strip())
        assert payload["message"] == "hello"
        assert payload["answer"] == 42
    finally:
        reset_logging()


def test_ledger_operations_emit_events(log_capture, receive, orchestrator):
    receive("WIDGET", 4, "1.00")

    messages = log_capture.messages()
    assert "movement_appended" in messages
    assert "stock_applied" in messages
