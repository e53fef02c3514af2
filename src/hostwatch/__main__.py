"""Entry point for the hostwatch service."""

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator, Callable
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .alerts.dispatcher import AlertDispatcher
from .core.config import Config, LoggingConfig
from .core.correlator import LoginCorrelator
from .core.dispatcher import NotificationDispatcher
from .core.events import LoginEvent
from .discovery.engine import DiscoveryEngine
from .discovery.probes import SystemProbeGateway
from .discovery.vendors import VendorCatalog
from .monitors.security_log import SecurityLogMonitor

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _configure_logging(settings: LoggingConfig, override: str | None = None) -> int:
    """Configure root logging from the [logging] section; returns the level."""
    log_level = getattr(logging, override or settings.level.upper())
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if settings.file:
        handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_size_mb * 1024 * 1024,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)

    return log_level


def _initialize_components(
    config: Config, loop: asyncio.AbstractEventLoop
) -> tuple[
    NotificationDispatcher,
    LoginCorrelator,
    DiscoveryEngine | None,
    AlertDispatcher,
]:
    """Initialize all system components."""
    dispatcher = NotificationDispatcher()

    correlator = LoginCorrelator(
        max_failed_attempts=config.login.max_failed_attempts,
        time_window=config.login.time_window,
        dispatcher=dispatcher,
        sweep_interval=config.login.sweep_interval_seconds,
    )
    logger.info(
        "Login correlator: %d attempts within %ss",
        config.login.max_failed_attempts,
        config.login.time_window_seconds,
    )

    engine = None
    if config.discovery.enabled:
        gateway = SystemProbeGateway(dns_workers=config.discovery.dns_concurrency)
        vendors = VendorCatalog(config.discovery.vendor_database_path)
        engine = DiscoveryEngine(
            gateway, vendors, dispatcher=dispatcher, config=config.discovery
        )
    else:
        logger.info("Network discovery disabled")

    alert_dispatcher = AlertDispatcher(
        discord_enabled=config.alerts.discord.enabled,
        webhook_url=config.alerts.discord.webhook_url,
        loop=loop,
        alert_on_new_devices=config.alerts.alert_on_new_devices,
    )
    if config.alerts.enabled:
        dispatcher.register_sink(alert_dispatcher)
    else:
        logger.info("Alerts disabled")

    return dispatcher, correlator, engine, alert_dispatcher


def _create_monitor_task(
    events: AsyncIterator[LoginEvent], correlator: LoginCorrelator
) -> asyncio.Task:
    """Feed events from the security log monitor into the correlator."""

    async def monitor_wrapper():
        logger.info("Starting security event monitor")
        try:
            async for event in events:
                logger.debug("Security monitor received event: %s", event)
                correlator.record_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Security event monitor failed: %s", e, exc_info=True)
            logger.warning("Security event monitor will not be restarted")

    return asyncio.create_task(monitor_wrapper())


def _create_periodic_task(
    name: str, interval: float, job: Callable[[], object]
) -> asyncio.Task:
    """Run a blocking job on a worker thread every `interval` seconds."""

    async def periodic():
        while True:
            try:
                await asyncio.to_thread(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Periodic job %s failed: %s", name, e, exc_info=True)
            await asyncio.sleep(interval)

    return asyncio.create_task(periodic(), name=name)


def _setup_signal_handlers() -> asyncio.Event:
    """Setup signal handlers for graceful shutdown."""
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    return shutdown_event


async def _shutdown_tasks(tasks: list[asyncio.Task]):
    logger.info("Shutting down tasks...")

    for task in tasks:
        task.cancel()

    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)

    logger.info("Shutdown complete")


async def main_loop(config: Config):
    """Main service loop."""
    logger.info("Starting hostwatch main loop")

    _, correlator, engine, alert_dispatcher = _initialize_components(
        config, asyncio.get_running_loop()
    )
    tasks = []

    correlator.start()
    if Path(config.login.security_log_path).exists():
        monitor = SecurityLogMonitor(config.login.security_log_path)
        tasks.append(_create_monitor_task(monitor.monitor(), correlator))
    else:
        logger.warning(
            "Security event feed not found: %s", config.login.security_log_path
        )

    if engine is not None:
        engine.start_monitoring()
        if config.discovery.auto_scan_enabled:
            tasks.append(
                _create_periodic_task(
                    "full-scan",
                    config.discovery.auto_scan_interval_seconds,
                    engine.perform_full_scan,
                )
            )
        tasks.append(
            _create_periodic_task(
                "status-refresh",
                config.discovery.status_refresh_interval_seconds,
                engine.refresh_statuses,
            )
        )

    logger.info("Started %d tasks", len(tasks))

    shutdown_event = _setup_signal_handlers()
    try:
        await shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        correlator.stop()
        if engine is not None:
            engine.stop_monitoring()
        await _shutdown_tasks(tasks)
        if engine is not None:
            engine.gateway.close()
        await alert_dispatcher.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="hostwatch - RDP brute-force and LAN device monitoring"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default="hostwatch.toml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        default=None,
        help="Logging level (overrides the configuration file)",
    )

    args = parser.parse_args()

    try:
        config = Config.load(args.config)
        log_level = _configure_logging(config.logging, args.log_level)

        logger.info("Configuration loaded from: %s", args.config)
        logger.info("Logging level set to: %s", logging.getLevelName(log_level))

        asyncio.run(main_loop(config))

    except FileNotFoundError as e:
        logger.error("Configuration file not found: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
