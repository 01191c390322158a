"""Background maintenance scheduler."""

import logging
from collections.abc import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

MaintenanceTask = Callable[[], Awaitable[int]]


class MaintenanceScheduler:
    """Runs the periodic sweep of expired state, sessions and JWKS entries."""

    def __init__(self, tasks: dict[str, MaintenanceTask], interval_seconds: int = 300):
        """
        Initialize scheduler.

        Args:
            tasks: Named sweep steps, each returning the number of items handled
            interval_seconds: Seconds between sweeps
        """
        self.scheduler = AsyncIOScheduler()
        self.tasks = tasks
        self.interval_seconds = interval_seconds
        self.sweep_job_id = "maintenance_sweep"

    async def run_sweep(self) -> dict[str, int]:
        """Execute every sweep step once.

        Returns:
            Items handled per step (-1 for a failed step)
        """
        results: dict[str, int] = {}
        for name, task in self.tasks.items():
            try:
                results[name] = await task()
            except Exception as e:
                # INTENTIONAL: One failing step should not stop the others.
                logger.error(f"Maintenance step {name} failed: {e}")
                results[name] = -1

        logger.debug(f"Maintenance sweep complete: {results}")
        return results

    def start(self):
        """Start the scheduler."""
        try:
            self.scheduler.add_job(
                self.run_sweep,
                trigger=IntervalTrigger(seconds=self.interval_seconds),
                id=self.sweep_job_id,
                name="Authentication maintenance sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.start()
            logger.info(f"Maintenance scheduler started (every {self.interval_seconds}s)")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def get_next_run_time(self):
        """
        Get next scheduled run time.

        Returns:
            Next run time or None
        """
        job = self.scheduler.get_job(self.sweep_job_id)
        if job:
            return job.next_run_time
        return None
