"""APScheduler runner for billing housekeeping jobs."""

import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from billing.expiry import sweep
from database import async_session


def _env_bool(name: str, default: bool = True) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        return default
    return max(minimum, parsed)


class VitrineScheduler:
    """Housekeeping scheduler."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.sweep_minutes = _env_int("EXPIRY_SWEEP_MINUTES", default=15, minimum=1)
        self.enable_expiry_sweep = _env_bool("ENABLE_EXPIRY_SWEEP", default=True)

    def setup_schedules(self):
        """Register jobs into APScheduler."""
        if self.enable_expiry_sweep:
            self.scheduler.add_job(
                self._run_expiry_sweep,
                IntervalTrigger(minutes=self.sweep_minutes),
                id="expiry_sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("[schedule] expiry sweep every {} min", self.sweep_minutes)

    async def _run_expiry_sweep(self):
        """Deactivate everything whose paid period ended."""
        try:
            async with async_session() as session:
                stats = await sweep(session)
            logger.info("[schedule] expiry sweep done: {}", stats)
        except Exception:
            logger.exception("[schedule] expiry sweep failed")

    def start(self):
        """Start scheduler."""
        self.scheduler.start()
        logger.info("Vitrine scheduler started")

    def stop(self):
        """Stop scheduler."""
        self.scheduler.shutdown()
        logger.info("Vitrine scheduler stopped")
