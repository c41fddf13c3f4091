"""
Integration tests for monitor/logger.py -- structured logging.
"""

import json
import logging
import sys

from monitor.logger import ConsoleFormatter, JSONFormatter, record_extras, setup_logging


def _record(msg="Hello %s", args=("world",), level=logging.INFO, name="gateway.audit", exc_info=None):
    return logging.LogRecord(
        name=name, level=level, pathname="test.py",
        lineno=1, msg=msg, args=args, exc_info=exc_info,
    )


class TestJSONFormatter:
    def test_format_basic_message(self):
        parsed = json.loads(JSONFormatter().format(_record()))
        assert parsed["level"] == "INFO"
        assert parsed["msg"] == "Hello world"
        assert parsed["logger"] == "gateway.audit"
        assert "ts" in parsed

    def test_extra_fields_merged(self):
        record = _record()
        record.event = "trade.execute"
        record.agent_id = "agent-1"
        record.amount = 12.5
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["event"] == "trade.execute"
        assert parsed["agent_id"] == "agent-1"
        assert parsed["amount"] == 12.5

    def test_extra_cannot_clobber_core_keys(self):
        record = _record()
        record.level = "spoofed"
        assert json.loads(JSONFormatter().format(record))["level"] == "INFO"

    def test_non_serializable_extra_stringified(self):
        record = _record()
        record.payload = object()
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["payload"].startswith("<object")

    def test_format_with_exception(self):
        try:
            raise ValueError("test error")
        except ValueError:
            record = _record(msg="Failed", args=(), level=logging.ERROR, exc_info=sys.exc_info())
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["level"] == "ERROR"
        assert "test error" in parsed["exception"]


class TestRecordExtras:
    def test_only_user_fields(self):
        record = _record()
        record.event = "auth.denied"
        assert record_extras(record) == {"event": "auth.denied"}


class TestConsoleFormatter:
    def test_format_basic_message(self):
        output = ConsoleFormatter(use_color=False).format(_record())
        assert "INF" in output
        assert "Hello world" in output
        assert "audit" in output
        assert "gateway.audit" not in output

    def test_format_warning(self):
        output = ConsoleFormatter(use_color=False).format(
            _record(msg="Watch out", args=(), level=logging.WARNING)
        )
        assert "WRN" in output


class TestSetupLogging:
    def test_writes_verbose_and_json_logs(self, tmp_path):
        json_log = tmp_path / "events.ndjson"
        log_path = setup_logging("INFO", json_log_file=str(json_log), log_dir=tmp_path / "logs")
        try:
            logging.getLogger("gateway.audit").info("[AUDIT] %s", "quote", extra={"event": "quote"})
            logging.getLogger("executor.planner").debug("sized bundle")
            for handler in logging.getLogger().handlers:
                handler.flush()

            verbose = open(log_path).read()
            assert "[AUDIT] quote" in verbose
            assert "sized bundle" in verbose

            lines = [json.loads(ln) for ln in json_log.read_text().splitlines()]
            audit = [ln for ln in lines if ln["logger"] == "gateway.audit"]
            assert audit[0]["event"] == "quote"
        finally:
            root = logging.getLogger()
            for handler in root.handlers[:]:
                handler.close()
                root.removeHandler(handler)

    def test_noisy_loggers_quieted(self, tmp_path):
        setup_logging("DEBUG", log_dir=tmp_path)
        try:
            assert logging.getLogger("httpx").level == logging.WARNING
            assert logging.getLogger("uvicorn.access").level == logging.WARNING
        finally:
            root = logging.getLogger()
            for handler in root.handlers[:]:
                handler.close()
                root.removeHandler(handler)
