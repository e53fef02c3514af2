"""Tests for main module."""

import asyncio
import logging
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler

import pytest

from hostwatch.__main__ import (
    LogLevel,
    _configure_logging,
    _create_monitor_task,
    _create_periodic_task,
    _initialize_components,
)
from hostwatch.core.config import (
    AlertsConfig,
    Config,
    DiscoveryConfig,
    LoggingConfig,
)
from hostwatch.core.correlator import LoginCorrelator
from hostwatch.core.events import LoginEvent, LoginEventKind


def test_log_level_choices():
    """Test that LogLevel enum produces valid CLI choices."""
    choices = [level.value for level in LogLevel]
    assert choices == ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


async def test_monitor_wrapper_logs_warning_on_failure(caplog):
    """Test that monitor wrapper logs a warning when the monitor fails."""

    async def failing_monitor():
        raise RuntimeError("Simulated failure")
        yield  # make it an async generator

    with caplog.at_level(logging.WARNING):
        task = _create_monitor_task(failing_monitor(), LoginCorrelator())
        await asyncio.gather(task, return_exceptions=True)

    assert any("Security event monitor failed" in r.message for r in caplog.records)
    assert any("will not be restarted" in r.message for r in caplog.records)


async def test_monitor_task_feeds_correlator():
    async def events():
        for _ in range(2):
            yield LoginEvent(
                timestamp=datetime.now(UTC),
                username="admin",
                source_ip="10.0.0.5",
                kind=LoginEventKind.FAILED_LOGIN,
            )

    correlator = LoginCorrelator()
    await _create_monitor_task(events(), correlator)

    assert correlator.snapshot()["10.0.0.5_admin"] == 2


async def test_periodic_task_survives_job_failure(caplog):
    calls = []

    def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    with caplog.at_level(logging.ERROR):
        task = _create_periodic_task("test-job", 0.01, job)
        for _ in range(200):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert len(calls) >= 2
    assert any("Periodic job test-job failed" in r.message for r in caplog.records)


def test_configure_logging_adds_file_handler(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    settings = LoggingConfig(level="info", file=str(tmp_path / "hostwatch.log"))

    try:
        level = _configure_logging(settings, "DEBUG")
        added = [
            h
            for h in root.handlers
            if h not in before and isinstance(h, RotatingFileHandler)
        ]

        assert level == logging.DEBUG
        assert len(added) == 1
        assert added[0].maxBytes == settings.max_size_mb * 1024 * 1024
    finally:
        for handler in root.handlers:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()


@pytest.mark.asyncio
async def test_initialize_components_honours_switches():
    config = Config(
        discovery=DiscoveryConfig(enabled=False),
        alerts=AlertsConfig(enabled=False),
    )

    dispatcher, correlator, engine, alerts = _initialize_components(
        config, asyncio.get_running_loop()
    )

    assert engine is None
    assert correlator.max_failed_attempts == config.login.max_failed_attempts
    assert alerts not in dispatcher._sinks
    await alerts.close()
