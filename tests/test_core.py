"""Tests for the ambient core: settings validation, logging, metrics, sentry."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import sys

import pytest

from council_gateway.core import runtime
from council_gateway.core.config import settings, validate_settings
from council_gateway.core.logging import (
    GatewayContextFilter,
    JSONFormatter,
    current_context,
    log_context,
    setup_logging,
)
from council_gateway.core.metrics import COUNCIL_RUNS, metrics_text
from council_gateway.core.sentry import init_sentry


class TestSettings:
    def test_defaults(self):
        assert settings.default_provider == "openai"
        assert settings.council_max_parallel >= 1
        assert settings.default_max_output_tokens == 2048
        assert settings.inline_media_limit_bytes == 20 * 1024 * 1024

    def test_validate_rejects_bad_limits(self, monkeypatch):
        monkeypatch.setattr(settings, "council_max_parallel", 0)
        with pytest.raises(SystemExit, match="COUNCIL_MAX_PARALLEL"):
            validate_settings()

    def test_validate_accepts_defaults(self):
        validate_settings()


class TestJSONFormatter:
    def test_structured_fields(self):
        record = logging.LogRecord("council_gateway.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.provider = "openai"
        record.council_id = "abc123"

        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["logger"] == "council_gateway.test"
        assert data["provider"] == "openai"
        assert data["council_id"] == "abc123"
        assert "model" not in data

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    yield root
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


class TestSetupLogging:
    def test_json_handler(self, monkeypatch, restore_root_logger):
        monkeypatch.setattr(settings, "log_json", True)
        setup_logging()
        root = restore_root_logger
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_text_lines_carry_context(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(level="debug", json_output=False, stream=stream)

        with log_context(council_id="c0ffee", provider="gemini"):
            logging.getLogger("council_gateway.test").info("member done")
        logging.getLogger("council_gateway.test").info("outside")

        first, second = stream.getvalue().splitlines()
        assert first.endswith("member done [council_id=c0ffee provider=gemini]")
        assert second.endswith("| outside")
        assert restore_root_logger.level == logging.DEBUG

    def test_json_lines_carry_context(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(level="INFO", json_output=True, stream=stream)

        with log_context(model="openai/gpt-4o"):
            logging.getLogger("council_gateway.test").warning("slow")

        data = json.loads(stream.getvalue())
        assert data["model"] == "openai/gpt-4o"
        assert data["level"] == "WARNING"
        assert "council_id" not in data


class TestLogContext:
    def test_nested_scopes_restore(self):
        with log_context(council_id="outer"):
            with log_context(council_id="inner", provider="xai"):
                assert current_context() == {"council_id": "inner", "provider": "xai"}
            assert current_context() == {"council_id": "outer"}
        assert current_context() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="unknown log context"):
            with log_context(request_id="x"):
                pass

    def test_explicit_extra_wins(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "m", (), None)
        record.provider = "anthropic"
        with log_context(provider="openai", council_id="abc"):
            GatewayContextFilter().filter(record)
        assert record.provider == "anthropic"
        assert record.council_id == "abc"

    @pytest.mark.asyncio
    async def test_tasks_inherit_context(self):
        async def worker() -> dict:
            return current_context()

        with log_context(council_id="fan-out"):
            seen = await asyncio.gather(worker(), worker())
        assert seen == [{"council_id": "fan-out"}] * 2


class TestRuntime:
    def test_configure_once(self, monkeypatch, restore_root_logger):
        monkeypatch.setattr(settings, "sentry_dsn", "")
        monkeypatch.setattr(runtime, "_configured", False)

        assert runtime.configure() is True
        assert isinstance(restore_root_logger.handlers[0].filters[0], GatewayContextFilter)
        assert runtime.configure() is False
        assert runtime.configure(force=True) is True

    def test_configure_validates_settings(self, monkeypatch, restore_root_logger):
        monkeypatch.setattr(settings, "council_max_parallel", 0)
        monkeypatch.setattr(runtime, "_configured", False)
        with pytest.raises(SystemExit):
            runtime.configure()
        assert runtime._configured is False


class TestMetricsAndSentry:
    def test_metrics_exposition(self):
        COUNCIL_RUNS.labels(status="success").inc()
        text = metrics_text().decode()
        assert "council_runs_total" in text
        assert "provider_requests_total" in text

    def test_sentry_disabled_without_dsn(self, monkeypatch):
        monkeypatch.setattr(settings, "sentry_dsn", "")
        assert init_sentry() is False
