"""
Main entry point for bountywatch.

    BOUNTYWATCH_MODE=once   one scan, exit code 0 / 2 (partial) / 1 (fatal)
    BOUNTYWATCH_MODE=serve  scheduler + webhook endpoint until SIGTERM/SIGINT

Once mode reads pending resource ids from BOUNTYWATCH_CHANGED (comma separated)
and forces a full scan with FORCE_FULL=true.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import List

from dotenv import load_dotenv

from bountywatch.core.coalescer import CoalescerDriver, EventCoalescer
from bountywatch.core.config import WatchConfig, load_config
from bountywatch.core.errors import BountyWatchError, ConfigError, PersistenceError
from bountywatch.core.fingerprint_store import FingerprintStore
from bountywatch.core.infra.scheduler import Scheduler
from bountywatch.core.infra.webhook import WebhookHandler, create_app, start_server
from bountywatch.core.models import EXIT_CODES, PendingChangeBatch, RunStatus
from bountywatch.core.pipeline_orchestrator import ScanRunner, build_runner
from bountywatch.core.plugin_loader import list_available
from bountywatch.sinks import DispatchSink, JsonFileSink

logger = logging.getLogger(__name__)

FATAL = EXIT_CODES[RunStatus.FATAL]


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    return [part.strip() for part in os.getenv(name, "").split(",") if part.strip()]


async def run_once(config: WatchConfig, runner: ScanRunner) -> int:
    pending = _env_list("BOUNTYWATCH_CHANGED")
    force_full = _env_flag("FORCE_FULL")
    logger.info("One-time run (force_full=%s, %d signalled)", force_full, len(pending))
    summary = await runner.run(config.resources, pending=pending, force_full=force_full)
    return summary.exit_code


async def serve(config: WatchConfig, runner: ScanRunner) -> int:
    settings = config.settings
    coalescer = EventCoalescer(
        quiet_window=settings.coalescer.quiet_window_seconds,
        max_window=settings.coalescer.max_window_seconds,
    )

    dispatch = None
    if settings.dispatch.url:
        dispatch = DispatchSink.from_settings(settings.dispatch, os.getenv(settings.dispatch.token_env))
        handlers = [dispatch]
        logger.info("Change batches go to %s", settings.dispatch.url)
    else:
        async def scan_batch(batch: PendingChangeBatch) -> None:
            summary = await runner.run(config.resources, pending=batch.resource_ids)
            if summary.status is RunStatus.FATAL:
                raise BountyWatchError(f"targeted scan failed: {summary.error}")

        handlers = [scan_batch]
        logger.info("Change batches trigger an in-process targeted scan")

    driver = CoalescerDriver(coalescer, handlers, max_requeues=settings.dispatch.max_requeues)

    async def targeted_scan() -> None:
        await runner.run(config.resources)

    async def full_scan() -> None:
        await runner.run(config.resources, force_full=True)

    scheduler = Scheduler(timezone=settings.scan.timezone)
    scheduler.add_interval_job(driver.tick, seconds=settings.coalescer.poll_interval_seconds, job_id="coalescer")
    scheduler.add_interval_job(targeted_scan, minutes=settings.scan.targeted_interval_minutes, job_id="targeted_scan")
    scheduler.add_cron_job(full_scan, settings.scan.full_scan_cron, job_id="full_scan")

    known = {r.id for r in config.active_resources}
    handler = WebhookHandler(
        coalescer,
        lambda: known,
        url_pattern=settings.webhook.url_pattern,
        secret=os.getenv(settings.webhook.secret_env),
    )
    if handler.secret is None:
        logger.warning("%s not set, webhook accepts unauthenticated requests", settings.webhook.secret_env)

    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    web_runner = await start_server(create_app(handler), settings.webhook.host, settings.webhook.port)
    try:
        await scheduler.start()
        for job_id, job in scheduler.list_jobs().items():
            logger.info("  - %s: next run %s", job_id, job["next_run"])
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await scheduler.stop()
        await web_runner.cleanup()
        if dispatch is not None:
            await dispatch.close()
        pending = coalescer.pending
        if pending:
            logger.warning("Dropping %d pending signals: %s", len(pending), ", ".join(sorted(pending)))
        logger.info("Shutdown complete")
    return 0


async def main() -> int:
    load_dotenv()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )

    config_file = os.getenv("BOUNTYWATCH_CONFIG", "config.yaml")
    try:
        config = load_config(config_file)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return FATAL
    if not config.resources:
        logger.error("No resources configured in %s. Exiting.", config_file)
        return FATAL

    logger.info("Discovered backends: %s", ", ".join(sorted(list_available())))

    settings = config.settings
    store = FingerprintStore(settings.store.path)
    try:
        await store.open()
    except PersistenceError as e:
        logger.error("Cannot open fingerprint store: %s", e)
        return FATAL

    try:
        try:
            runner = build_runner(config, store, sinks=[JsonFileSink(settings.output.dir)])
        except (ConfigError, KeyError) as e:
            logger.error("Configuration error: %s", e)
            return FATAL
        try:
            if os.getenv("BOUNTYWATCH_MODE", "once") == "serve":
                logger.info("Starting bountywatch in serve mode...")
                return await serve(config, runner)
            return await run_once(config, runner)
        finally:
            await runner.close()
    finally:
        await store.close()


def run_bountywatch():
    """Entry point that can be called from other scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run_bountywatch()
