from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import time

import structlog

from netwatch.config import DEFAULT_CONFIG_PATH, WatchdogConfig, load_config
from netwatch.errors import NetwatchError
from netwatch.metrics import MetricsStore
from netwatch.notifier import EVENT_HEALTH, NotificationEvent, WebhookNotifier
from netwatch.prober import check_probe_dependencies, probe
from netwatch.reboot import RebootExecutor
from netwatch.system import hostname, system_uptime_seconds
from netwatch.watchdog import Watchdog

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """One line per event on stderr; the supervisor decides where it goes."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, str(level).upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


async def run_loop(config: WatchdogConfig) -> int:
    check_probe_dependencies(config)

    notifier = WebhookNotifier(config)
    watchdog = Watchdog(
        config,
        store=MetricsStore(config.metrics_path),
        notifier=notifier,
        executor=RebootExecutor(),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, watchdog.stop)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await watchdog.run()
    finally:
        await notifier.aclose()
    return 0


async def run_once(config: WatchdogConfig) -> int:
    check_probe_dependencies(config)
    started = time.perf_counter()
    outcome = await probe(config)
    is_up = outcome.is_up(config.min_ok)
    logger.info(
        "probe_once",
        mode=config.health_check_mode,
        success_count=outcome.success_count,
        total=outcome.total,
        min_ok=config.min_ok,
        is_up=is_up,
        elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
    )
    return 0 if is_up else 1


async def send_test_webhook(config: WatchdogConfig) -> int:
    notifier = WebhookNotifier(config)
    if not config.webhook.enabled or not config.webhook.url:
        logger.error("webhook_not_configured", enabled=config.webhook.enabled, url=config.webhook.url or None)
        return 1

    store = MetricsStore(config.metrics_path)
    store.load()
    event = NotificationEvent(
        kind=EVENT_HEALTH,
        message="Test notification from netwatch-agent",
        timestamp=time.time(),
        hostname=hostname(),
        uptime=system_uptime_seconds(),
        metrics=store.metrics.snapshot(),
    )
    ok = await notifier.deliver(event)
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="WAN watchdog: reboot the host after a continuous outage")
    parser.add_argument(
        "--config",
        default=os.getenv("NETWATCH_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config (environment variables override it)",
    )
    parser.add_argument("--once", action="store_true", help="Run one probe cycle, exit 0 if WAN is up")
    parser.add_argument("--test-webhook", action="store_true", help="Send a test notification and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    # httpx logs every request at INFO, including webhook URLs that may carry tokens.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        config = load_config(args.config)
        if args.test_webhook:
            return asyncio.run(send_test_webhook(config))
        if args.once:
            return asyncio.run(run_once(config))
        return asyncio.run(run_loop(config))
    except NetwatchError as e:
        logger.error("fatal", error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
