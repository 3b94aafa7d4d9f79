"""
Tests for structured logging
"""
import json
import logging
from io import StringIO

import pytest

from order_bot.core.logging import (
    JSONFormatter,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture
def log_stream():
    return StringIO()


@pytest.fixture
def json_logger(request, log_stream):
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(JSONFormatter(app_name="order-bot-test"))
    logger = get_logger(f"tests.logging.{request.node.name}")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    yield logger
    logger.removeHandler(handler)


def _entries(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestCorrelationId:

    @pytest.mark.unit
    def test_set_and_get(self):
        assert set_correlation_id("wamid123") == "wamid123"
        assert get_correlation_id() == "wamid123"

    @pytest.mark.unit
    def test_generated_when_missing(self):
        cid = set_correlation_id(None)
        assert len(cid) == 8
        assert cid.isalnum()


class TestJSONFormatter:

    @pytest.mark.unit
    def test_basic_fields(self, json_logger, log_stream):
        json_logger.info("Order created")

        entry = _entries(log_stream)[0]
        assert entry["level"] == "INFO"
        assert entry["message"] == "Order created"
        assert entry["app"] == "order-bot-test"
        assert entry["logger"] == json_logger.name
        assert "timestamp" in entry

    @pytest.mark.unit
    def test_extra_data(self, json_logger, log_stream):
        json_logger.info("Order created", extra_data={"order_number": "WA2403070012", "total": 4500})

        assert _entries(log_stream)[0]["extra"] == {"order_number": "WA2403070012", "total": 4500}

    @pytest.mark.unit
    def test_location_points_at_caller(self, json_logger, log_stream):
        json_logger.warning("where am i", extra_data={"k": 1})

        assert "test_location_points_at_caller" in _entries(log_stream)[0]["location"]

    @pytest.mark.unit
    def test_correlation_id_included(self, json_logger, log_stream):
        set_correlation_id("corr-42")
        json_logger.info("with id")

        assert _entries(log_stream)[0]["correlation_id"] == "corr-42"

    @pytest.mark.unit
    def test_exception_info(self, json_logger, log_stream):
        try:
            raise ValueError("stock went negative")
        except ValueError:
            json_logger.error("Delivery failed", exc_info=True)

        entry = _entries(log_stream)[0]
        assert "ValueError: stock went negative" in entry["exception"]

    @pytest.mark.unit
    def test_non_ascii_kept_readable(self, json_logger, log_stream):
        json_logger.info("הזמנה נוצרה")
        assert "הזמנה נוצרה" in log_stream.getvalue()


class TestSetupLogging:

    @pytest.mark.unit
    def test_configures_root_and_quiets_libraries(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(level="DEBUG", json_format=False)
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestLogAsyncOperation:

    @pytest.mark.unit
    async def test_success_logged_with_duration(self, caplog):
        @log_async_operation("scan")
        async def scan():
            return 3

        with caplog.at_level(logging.DEBUG):
            assert await scan() == 3

        completed = [r for r in caplog.records if r.getMessage() == "Completed scan"]
        assert completed and "duration_seconds" in completed[0].extra_data

    @pytest.mark.unit
    async def test_failure_logged_and_reraised(self, caplog):
        @log_async_operation("scan")
        async def scan():
            raise RuntimeError("db gone")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(RuntimeError):
                await scan()

        assert any(r.getMessage() == "Failed scan: db gone" for r in caplog.records)
