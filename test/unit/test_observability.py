"""Tests for structured logging configuration."""

import json

import pytest

from pydynastore.observability import get_logger, setup_logging


class TestSetupLogging:
    """Test the rendered output of configured loggers."""

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(level="INFO", format="json")

        get_logger("pydynastore.test").info("item_written", table_name="test-users")

        record = json.loads(capsys.readouterr().err.strip())
        assert record["event"] == "item_written"
        assert record["level"] == "info"
        assert record["table_name"] == "test-users"
        assert "timestamp" in record

    def test_console_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(level="INFO", format="console")

        get_logger("pydynastore.test").warning("batch_retry", attempt=1)

        output = capsys.readouterr().err
        assert "batch_retry" in output
        assert "attempt=1" in output

    def test_level_filters_lower_events(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(level="WARNING")
        logger = get_logger("pydynastore.test")

        logger.info("ignored")
        logger.error("kept")

        lines = capsys.readouterr().err.strip().splitlines()
        assert [json.loads(line)["event"] for line in lines] == ["kept"]

    def test_unknown_level_defaults_to_info(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(level="VERBOSE")
        logger = get_logger("pydynastore.test")

        logger.debug("ignored")
        logger.info("kept")

        lines = capsys.readouterr().err.strip().splitlines()
        assert [json.loads(line)["event"] for line in lines] == ["kept"]

    def test_bound_context_is_rendered(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging()

        get_logger("pydynastore.test").bind(operation="query").info("dynamodb_error")

        record = json.loads(capsys.readouterr().err.strip())
        assert record["operation"] == "query"
