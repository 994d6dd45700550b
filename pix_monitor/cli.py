"""Command line entry point for the PIX payment health monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

import httpx
import structlog
import yaml

from pix_monitor.config import ConfigError, MonitorConfig, load_config, parse_hhmm
from pix_monitor.error_state import ErrorStateTracker
from pix_monitor.metrics import PerformanceTracker
from pix_monitor.monitor import PixMonitor
from pix_monitor.probe import PaymentProbeClient, ProbeConfig
from pix_monitor.scheduler import JobScheduler
from pix_monitor.storage import JsonFileStore
from pix_monitor.telegram import TelegramConfig, TelegramNotifier

logger = structlog.get_logger(__name__)

EPILOG = """\
environment:
  PIX_API_URL, PIX_API_SECRET_KEY         payment API endpoint and key
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID    alert destination
  CHECK_INTERVAL_MINUTES                  minutes between checks (default 15)
  MONITOR_START_HOUR, MONITOR_END_HOUR    optional monitoring window
  MONITORING_CONFIG                       optional YAML config path

signals:
  SIGINT, SIGTERM   graceful shutdown
  SIGUSR1           pause checks
  SIGUSR2           resume checks
"""

HEALTH_CHECK_JOB = "health_check"
DAILY_REPORT_JOB = "daily_report"
STATUS_SUMMARY_JOB = "status_summary"


def configure_logging(level: str) -> None:
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # The Telegram token is part of the Bot API URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_monitor(config: MonitorConfig, http_client: httpx.AsyncClient) -> PixMonitor:
    tz = config.tz

    def clock() -> datetime:
        return datetime.now(tz)

    store = JsonFileStore(config.data_dir)
    probe = PaymentProbeClient(
        http_client,
        ProbeConfig(
            api_url=config.api_url,
            secret_key=config.secret_key or "",
            purchase_path=config.purchase_path,
            timeout_ms=float(config.request_timeout_ms),
            amount_cents=config.test_amount_cents,
            postback_url=config.postback_url,
        ),
    )
    notifier = TelegramNotifier(
        http_client,
        TelegramConfig(bot_token=config.telegram_bot_token or "", chat_id=config.telegram_chat_id or ""),
        enabled=config.notifications_enabled,
        environment=config.environment,
    )
    metrics = PerformanceTracker(
        store,
        max_samples=config.max_samples,
        retention_days=config.retention_days,
        clock=clock,
    )
    error_tracker = ErrorStateTracker(
        store,
        cooldown_minutes=config.notification_cooldown_minutes,
        request_timeout_ms=config.request_timeout_ms,
        clock=clock,
    )
    return PixMonitor(
        config,
        probe=probe,
        notifier=notifier,
        metrics=metrics,
        error_tracker=error_tracker,
        store=store,
        clock=clock,
    )


def schedule_jobs(scheduler: JobScheduler, monitor: PixMonitor, config: MonitorConfig) -> None:
    scheduler.add_interval_job(
        HEALTH_CHECK_JOB,
        monitor.run_health_check,
        seconds=config.check_interval_minutes * 60,
        description="PIX health check",
    )
    hour, minute = parse_hhmm(config.daily_report_time)
    scheduler.add_cron_job(
        DAILY_REPORT_JOB,
        monitor.generate_daily_report,
        f"{minute} {hour} * * *",
        description="Daily report",
    )
    scheduler.add_cron_job(
        STATUS_SUMMARY_JOB,
        monitor.send_status_summary,
        f"0 */{config.status_summary_hours} * * *",
        description="Status summary",
    )


async def run(
    config: MonitorConfig,
    *,
    once: bool = False,
    monitor_factory: Callable[[MonitorConfig, httpx.AsyncClient], PixMonitor] = build_monitor,
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    """Run the monitor until a shutdown signal or `stop_event`; returns the process exit code."""
    async with httpx.AsyncClient() as http_client:
        monitor = monitor_factory(config, http_client)
        try:
            await monitor.initialize()
        except Exception as exc:
            logger.error("Failed to initialize monitor", error=f"{type(exc).__name__}: {exc}")
            return 1

        if once:
            outcome = await monitor.run_once()
            logger.info("Test check finished", success=outcome.success if outcome else None)
            return 0

        loop = asyncio.get_running_loop()
        if stop_event is None:
            stop_event = asyncio.Event()
        exit_code = 0

        def request_shutdown(code: int) -> None:
            nonlocal exit_code
            if code:
                exit_code = code
            stop_event.set()

        def on_loop_exception(_loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
            exc = context.get("exception")
            logger.error(
                "Unhandled exception in event loop",
                message=context.get("message"),
                error=repr(exc) if exc else None,
            )
            request_shutdown(1)

        signal_handlers = {
            signal.SIGINT: (request_shutdown, 0),
            signal.SIGTERM: (request_shutdown, 0),
            signal.SIGUSR1: (monitor.pause,),
            signal.SIGUSR2: (monitor.resume,),
        }
        loop.set_exception_handler(on_loop_exception)
        for sig, (callback, *args) in signal_handlers.items():
            loop.add_signal_handler(sig, callback, *args)

        scheduler = JobScheduler(timezone=config.tz)
        try:
            scheduler.on_job_error(lambda _job_id, _exc: request_shutdown(1))
            schedule_jobs(scheduler, monitor, config)
            scheduler.start()
            logger.info("Monitor running", jobs=scheduler.list_jobs())

            await monitor.run_health_check()
            await stop_event.wait()

            logger.info("Shutting down", exit_code=exit_code)
            try:
                scheduler.stop(wait=True)
                await monitor.stop()
            except Exception as exc:
                logger.error("Error during shutdown", error=f"{type(exc).__name__}: {exc}")
                return 1
            return exit_code
        finally:
            scheduler.stop(wait=False)
            for sig in signal_handlers:
                loop.remove_signal_handler(sig)
            loop.set_exception_handler(None)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pix-monitor",
        description="PIX payment health monitor",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--test", action="store_true", help="Run a single health check and exit")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $MONITORING_CONFIG)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        for name in exc.missing:
            print(f"  - {name}", file=sys.stderr)
        return 1
    except (ValueError, yaml.YAMLError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.log_level)
    return asyncio.run(run(config, once=bool(args.test)))


if __name__ == "__main__":
    raise SystemExit(main())
