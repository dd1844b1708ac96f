"""Vitrine Scheduler Runner -- billing housekeeping jobs.

Usage:
    python scripts/run_scheduler.py
    python scripts/run_scheduler.py --once   # single sweep, then exit

Environment variables:
    EXPIRY_SWEEP_MINUTES  -- interval between expiry sweeps (default: 15)
    ENABLE_EXPIRY_SWEEP   -- set to 0 to disable the sweep job

Ctrl+C or SIGTERM for graceful shutdown.
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

_root = str(Path(__file__).resolve().parent.parent)
sys.path.insert(0, _root)
os.chdir(_root)

from dotenv import load_dotenv  # noqa: E402
load_dotenv(Path(_root) / ".env")

from loguru import logger  # noqa: E402
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")

_logs_dir = Path(os.getenv("LOG_DIR", Path(_root) / "logs"))
_logs_dir.mkdir(exist_ok=True)
logger.add(
    str(_logs_dir / "scheduler_{time:YYYY-MM-DD}.log"),
    rotation="1 day",
    retention="7 days",
    level="DEBUG",
    encoding="utf-8",
)

from billing.expiry import sweep  # noqa: E402
from database import async_session, init_db  # noqa: E402
from scheduler.scheduler import VitrineScheduler  # noqa: E402


_scheduler: VitrineScheduler | None = None
_shutdown_event: asyncio.Event | None = None


def _handle_signal(sig, _frame):
    """Graceful shutdown on SIGINT / SIGTERM."""
    sig_name = signal.Signals(sig).name
    logger.info("Received {}, shutting down...", sig_name)
    if _scheduler is not None:
        _scheduler.stop()
    if _shutdown_event is not None:
        _shutdown_event.set()


async def run_once():
    """Single expiry sweep, for cron or a manual catch-up."""
    await init_db()
    async with async_session() as session:
        stats = await sweep(session)
    logger.info("Expiry sweep: {}", stats)


async def main():
    global _scheduler, _shutdown_event

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    await init_db()
    logger.info("DB initialized")

    _scheduler = VitrineScheduler()
    _scheduler.setup_schedules()
    _scheduler.start()

    _shutdown_event = asyncio.Event()
    logger.info("Scheduler running. Ctrl+C to stop.")
    await _shutdown_event.wait()

    logger.info("Scheduler stopped.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Vitrine housekeeping scheduler")
    parser.add_argument("--once", action="store_true", help="run one expiry sweep and exit")
    args = parser.parse_args()
    asyncio.run(run_once() if args.once else main())
