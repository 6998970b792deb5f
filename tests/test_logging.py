"""Tests for mealsync.core.logging."""

import pytest
import structlog
from structlog.testing import capture_logs

from mealsync.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from tests._support.fakes import make_settings


class TestConfigureLogging:
    def teardown_method(self):
        structlog.reset_defaults()

    def test_configure_json(self):
        configure_logging(level="DEBUG", json_format=True, service="mealsync-test")
        assert structlog.is_configured()

    def test_configure_console(self):
        configure_logging(level="INFO", json_format=False)
        assert structlog.is_configured()

    def test_configure_from_settings(self):
        settings = make_settings(log_level="warning", log_format="json")
        configure_logging(settings)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_explicit_arguments_win(self):
        configure_logging(make_settings(log_format="json"), json_format=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestGetLogger:
    def test_events_carry_key_values(self):
        with capture_logs() as logs:
            get_logger("test").info("something_happened", count=1)
        assert logs == [{"event": "something_happened", "count": 1, "log_level": "info"}]


class TestContext:
    def teardown_method(self):
        clear_context()

    def test_bind_and_unbind(self):
        bind_context(update_id="upd_1", backend="local")
        unbind_context("backend")
        assert structlog.contextvars.get_contextvars() == {"update_id": "upd_1"}

    def test_log_context_unbinds_on_exit(self):
        with LogContext(backend="local"):
            assert structlog.contextvars.get_contextvars()["backend"] == "local"
        assert "backend" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_async_log_context(self):
        async with LogContext(update_id="upd_2"):
            assert structlog.contextvars.get_contextvars()["update_id"] == "upd_2"
        assert "update_id" not in structlog.contextvars.get_contextvars()
