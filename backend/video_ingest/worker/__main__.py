"""
Reconciliation worker process.

    python -m video_ingest.worker [--once]

Exit codes: 0 clean shutdown, 1 unrecoverable startup failure, 2 invalid configuration.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError
from sqlalchemy import text

from video_ingest.core.logging import configure_logging
from video_ingest.core.settings import Settings, get_settings
from video_ingest.db.session import dispose_engine, get_session_maker
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.event_processor import EventProcessor
from video_ingest.worker.reconcile import ReconciliationWorker

logger = logging.getLogger("video_ingest.worker")

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1
EXIT_BAD_CONFIG = 2


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="video_ingest.worker", description="Reconcile in-flight lesson videos.")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    return parser.parse_args(argv)


async def _check_database() -> None:
    SessionLocal = get_session_maker()
    async with SessionLocal() as db:
        await db.execute(text("SELECT 1"))


async def _run(settings: Settings, *, once: bool) -> int:
    try:
        await _check_database()
    except Exception:
        logger.exception("Database is not reachable")
        await dispose_engine()
        return EXIT_STARTUP_FAILED

    registry = ProviderRegistry(settings)
    try:
        try:
            registry.default()
        except ValueError as e:
            logger.error("Provider is misconfigured: %s", e)
            return EXIT_BAD_CONFIG

        # Runs out of process: no progress hub here, subscribers catch up from snapshots.
        processor = EventProcessor(settings, registry)
        worker = ReconciliationWorker(settings, registry, processor)

        if once:
            report = await worker.run_once()
            logger.info(
                "Single pass: scanned=%d applied=%d abandoned=%d failed=%d",
                report.scanned,
                report.applied,
                report.abandoned,
                report.failed,
            )
            return EXIT_OK

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops do not support signal handlers.
                pass
        await worker.run_forever(stop)
        return EXIT_OK
    finally:
        await registry.aclose()
        await dispose_engine()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging("INFO")
        logger.error("Invalid configuration:\n%s", e)
        return EXIT_BAD_CONFIG

    configure_logging(settings.log_level)
    return asyncio.run(_run(settings, once=args.once))


if __name__ == "__main__":
    sys.exit(main())
