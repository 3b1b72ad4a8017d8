"""
Maintenance tasks for Aurora server.

Periodic backups with vacuum/analyze, and retention-based cleanup of old
runs. Every failure here is logged and swallowed so maintenance can never
block or abort ingestion.
"""

import asyncio
import logging

from .errors import AuroraError
from .utils import log_event

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Runs backup and retention loops on their own intervals."""

    def __init__(self, database, config: dict):
        self.database = database
        self.backup_interval = config["database"]["backup_interval_hours"] * 3600
        self.backups_to_keep = config["database"]["backups_to_keep"]
        self.cleanup_interval = config["retention"]["cleanup_interval_hours"] * 3600
        self.retention_days = config["retention"]["days"]
        self.running = False
        self._tasks = []

    def start(self):
        """Start the background loops."""
        if self.running:
            logger.warning("Maintenance scheduler already running")
            return
        self.running = True
        self._tasks = [asyncio.create_task(self._backup_loop())]
        if self.retention_days:
            self._tasks.append(asyncio.create_task(self._cleanup_loop()))
        logger.info(
            f"Started maintenance scheduler (backup every {self.backup_interval:.0f}s, "
            f"retention {self.retention_days} days)"
        )

    async def stop(self):
        """Cancel the background loops and wait for them to finish."""
        if not self.running:
            return
        self.running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Maintenance scheduler stopped")

    async def _backup_loop(self):
        while True:
            await asyncio.sleep(self.backup_interval)
            await self.run_backup()

    async def _cleanup_loop(self):
        while True:
            await self.run_retention_cleanup()
            await asyncio.sleep(self.cleanup_interval)

    async def run_backup(self):
        """Back up, prune old backups and run analyze/vacuum. Returns the backup path or None."""
        try:
            path = await self.database.create_backup()
            await self.database.prune_backups(self.backups_to_keep)
            await self.database.run_maintenance()
            return path
        except (AuroraError, OSError) as e:
            logger.error(f"Backup maintenance failed: {e}")
            log_event("maintenance_error", task="backup", error=str(e))
            return None

    async def run_retention_cleanup(self, retention_days=None):
        """Delete runs older than the retention window. Returns deleted counts or None."""
        days = retention_days if retention_days is not None else self.retention_days
        if not days:
            return None
        try:
            return await self.database.cleanup_old_data(days)
        except AuroraError as e:
            logger.error(f"Retention cleanup failed: {e}")
            log_event("maintenance_error", task="retention_cleanup", error=str(e))
            return None
