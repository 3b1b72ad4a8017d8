"""
SQLite persistence engine for Aurora server.

A single aiosqlite connection is shared by every repository. Writes and
transactions are serialised through one asyncio lock so the store behaves
as a single-writer database; reads interleave cooperatively.
"""

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os
import aiosqlite

from .errors import NotFoundError, PersistenceError, ValidationError
from .repositories import (
    FilterPresetRepository,
    MetadataRepository,
    ScreenshotRepository,
    TestResultRepository,
    TestRunRepository,
)
from .schema import SchemaManager
from .utils import iso_days_ago, log_event, now_utc_iso, parse_iso

logger = logging.getLogger(__name__)

VACUUM_FREE_RATIO = 0.1
COPY_CHUNK_SIZE = 1024 * 1024
BACKUP_SUFFIX = ".db"


class TelemetryDatabase:
    """SQLite database for test telemetry storage and analysis."""

    def __init__(self, db_path, enable_wal: bool = True, busy_timeout_ms: int = 10000,
                 backup_dir=None, backup_interval_hours: float = 24):
        self.db_path = Path(db_path)
        self.enable_wal = enable_wal
        self.busy_timeout_ms = busy_timeout_ms
        self.backup_dir = Path(backup_dir) if backup_dir else self.db_path.parent / "backups"
        if not self.backup_dir.is_absolute():
            self.backup_dir = self.db_path.parent / self.backup_dir
        self.backup_interval_hours = backup_interval_hours

        self._conn: Optional[aiosqlite.Connection] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._tx_owner = None

        self.schema = SchemaManager()
        self.runs = TestRunRepository(self)
        self.results = TestResultRepository(self)
        self.screenshots = ScreenshotRepository(self)
        self.presets = FilterPresetRepository(self)
        self.metadata = MetadataRepository(self)

    # --- Connection lifecycle ---

    @property
    def is_connected(self):
        return self._initialized and self._conn is not None

    async def initialize(self):
        """Open the shared connection, create the schema and run migrations."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = None
            try:
                conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
                await self._configure(conn)
                await self.schema.create_schema(conn)
                applied = await self.schema.migrate(conn)
            except sqlite3.Error as e:
                if conn is not None:
                    await conn.close()
                raise PersistenceError(f"Failed to initialize database {self.db_path}: {e}") from e
            except PersistenceError:
                if conn is not None:
                    await conn.close()
                raise

            self._conn = conn
            self._initialized = True
            log_event("database_initialized", path=str(self.db_path), migrations=applied)

    async def _configure(self, conn):
        if self.enable_wal:
            await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA synchronous = NORMAL")
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        await conn.execute("PRAGMA cache_size = -64000")
        await conn.execute("PRAGMA temp_store = MEMORY")

    async def close(self):
        """Close the shared connection."""
        async with self._init_lock:
            await self._close_connection()

    async def _close_connection(self):
        if self._conn is not None:
            try:
                await self._conn.close()
            except sqlite3.Error as e:
                logger.error(f"Error closing database {self.db_path}: {e}")
        self._conn = None
        self._initialized = False

    @asynccontextmanager
    async def get_connection(self):
        """Yield the shared connection, translating sqlite errors."""
        await self.initialize()
        try:
            yield self._conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Database error: {e}") from e

    @asynccontextmanager
    async def _writer(self):
        # Writes issued inside transaction() run under the owner's lock.
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            yield
            return
        async with self._write_lock:
            yield

    @asynccontextmanager
    async def transaction(self):
        """Run a block inside BEGIN IMMEDIATE / COMMIT, rolling back on error."""
        await self.initialize()
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            yield self._conn
            return

        async with self._write_lock:
            self._tx_owner = asyncio.current_task()
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                except BaseException:
                    await self._conn.execute("ROLLBACK")
                    raise
                await self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise PersistenceError(f"Transaction failed: {e}") from e
            finally:
                self._tx_owner = None

    @asynccontextmanager
    async def maintenance_lock(self):
        """Hold the writer role for maintenance, waiting at most the busy timeout."""
        await self.initialize()
        timeout = max(self.busy_timeout_ms / 1000.0, 0.001)
        try:
            await asyncio.wait_for(self._write_lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(f"Database busy: writer not available within {timeout:.1f}s")
        try:
            yield self._conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Maintenance failed: {e}") from e
        finally:
            self._write_lock.release()

    # --- Query helpers used by the repositories ---

    async def fetch_all(self, sql: str, params=()) -> List[Dict[str, Any]]:
        async with self.get_connection() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            columns = [col[0] for col in cursor.description] if cursor.description else []
            return [dict(zip(columns, row)) for row in rows]

    async def fetch_one(self, sql: str, params=()) -> Optional[Dict[str, Any]]:
        async with self.get_connection() as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
            if row is None:
                return None
            columns = [col[0] for col in cursor.description]
            return dict(zip(columns, row))

    async def fetch_value(self, sql: str, params=(), default=None):
        async with self.get_connection() as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
            if row is None or row[0] is None:
                return default
            return row[0]

    async def execute(self, sql: str, params=()) -> int:
        """Run a write statement and return the number of changed rows."""
        async with self.get_connection() as db:
            async with self._writer():
                cursor = await db.execute(sql, params)
                return cursor.rowcount

    # --- Schema ---

    async def get_schema_info(self):
        async with self.get_connection() as db:
            return await self.schema.get_schema_info(db)

    async def reset(self):
        """Drop every table and recreate the schema."""
        async with self.maintenance_lock() as db:
            await self.schema.drop_all(db)
            await self.schema.create_schema(db)
            await self.schema.migrate(db)
        log_event("database_reset", path=str(self.db_path))

    # --- Maintenance primitives ---

    async def analyze(self):
        async with self.maintenance_lock() as db:
            await db.execute("ANALYZE")

    async def vacuum(self):
        async with self.maintenance_lock() as db:
            await db.execute("VACUUM")

    async def backup(self, target_path) -> Path:
        """Write a consistent point-in-time copy using the online backup API."""
        target_path = Path(target_path)
        await aiofiles.os.makedirs(target_path.parent, exist_ok=True)
        async with self.maintenance_lock() as db:
            async with aiosqlite.connect(str(target_path)) as target:
                await db.backup(target)
        return target_path

    async def get_stats(self) -> Dict[str, Any]:
        """Page-level statistics of the database file."""
        page_count = await self.fetch_value("PRAGMA page_count", default=0)
        page_size = await self.fetch_value("PRAGMA page_size", default=0)
        freelist_count = await self.fetch_value("PRAGMA freelist_count", default=0)
        wal_path = Path(f"{self.db_path}-wal")
        size = await aiofiles.os.path.getsize(self.db_path) if await aiofiles.os.path.exists(self.db_path) else 0
        wal_size = await aiofiles.os.path.getsize(wal_path) if await aiofiles.os.path.exists(wal_path) else 0
        return {
            "size": size,
            "walSize": wal_size,
            "pageCount": page_count,
            "pageSize": page_size,
            "freelistCount": freelist_count,
            "freeRatio": (freelist_count / page_count) if page_count else 0.0,
        }

    # --- Database manager operations ---

    async def create_backup(self, name: Optional[str] = None) -> Path:
        """Create backups/<name>-backup-<timestamp>.db and return its path."""
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        base = name or self.db_path.stem
        path = self.backup_dir / f"{base}-backup-{stamp}{BACKUP_SUFFIX}"
        await self.backup(path)
        log_event("backup_created", path=str(path))
        return path

    async def list_backups(self) -> List[Dict[str, Any]]:
        """Return known backups, newest first."""
        if not await aiofiles.os.path.isdir(self.backup_dir):
            return []
        backups = []
        for entry in await aiofiles.os.listdir(self.backup_dir):
            if not entry.endswith(BACKUP_SUFFIX) or "-backup-" not in entry:
                continue
            path = self.backup_dir / entry
            stat = await aiofiles.os.stat(path)
            backups.append({
                "path": str(path),
                "name": entry,
                "size": stat.st_size,
                "createdAt": datetime.fromtimestamp(stat.st_mtime, UTC)
                    .replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z",
            })
        backups.sort(key=lambda b: (b["createdAt"], b["name"]), reverse=True)
        return backups

    async def prune_backups(self, keep: int) -> int:
        """Delete all but the newest `keep` backups. Returns the number removed."""
        removed = 0
        for backup in (await self.list_backups())[keep:]:
            await aiofiles.os.remove(backup["path"])
            removed += 1
        if removed:
            log_event("backups_pruned", removed=removed, kept=keep)
        return removed

    async def restore_from_backup(self, backup_path):
        """Replace the live database with a backup file and reopen it."""
        backup_path = Path(backup_path)
        if not await aiofiles.os.path.isfile(backup_path):
            raise NotFoundError("Backup", str(backup_path))

        # Holding the init lock keeps other callers from reopening mid-copy.
        async with self._init_lock, self._write_lock:
            await self._close_connection()
            for suffix in ("-wal", "-shm"):
                sidecar = Path(f"{self.db_path}{suffix}")
                if await aiofiles.os.path.exists(sidecar):
                    await aiofiles.os.remove(sidecar)
            async with aiofiles.open(backup_path, "rb") as src:
                async with aiofiles.open(self.db_path, "wb") as dst:
                    while True:
                        chunk = await src.read(COPY_CHUNK_SIZE)
                        if not chunk:
                            break
                        await dst.write(chunk)
        await self.initialize()
        log_event("backup_restored", path=str(backup_path))

    async def run_maintenance(self) -> Dict[str, Any]:
        """ANALYZE, then VACUUM when more than 10% of the pages are free."""
        await self.analyze()
        stats = await self.get_stats()
        vacuumed = False
        if stats["freeRatio"] > VACUUM_FREE_RATIO:
            await self.vacuum()
            vacuumed = True
        log_event("maintenance_completed", free_ratio=round(stats["freeRatio"], 4), vacuumed=vacuumed)
        return {"analyzed": True, "vacuumed": vacuumed, "freeRatio": stats["freeRatio"]}

    async def get_statistics(self) -> Dict[str, Any]:
        """File statistics plus entity counts."""
        stats = await self.get_stats()
        stats["testRuns"] = await self.fetch_value("SELECT COUNT(*) FROM test_runs", default=0)
        stats["testResults"] = await self.fetch_value("SELECT COUNT(*) FROM test_results", default=0)
        stats["screenshots"] = await self.fetch_value("SELECT COUNT(*) FROM screenshots", default=0)
        stats["filterPresets"] = await self.fetch_value("SELECT COUNT(*) FROM filter_presets", default=0)
        return stats

    async def cleanup_old_data(self, retention_days: int, now=None) -> Dict[str, int]:
        """Delete runs older than now - retention_days; dependents cascade.

        Returns the number of runs, results and screenshots removed.
        """
        if isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 1:
            raise ValidationError("retentionDays must be a positive integer")

        cutoff = iso_days_ago(retention_days, now=now)
        async with self.maintenance_lock() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                runs, results, screenshots = await self._delete_before(db, cutoff)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

        deleted = {"runs": runs, "results": results, "screenshots": screenshots}
        log_event("retention_cleanup", retention_days=retention_days, cutoff=cutoff, **deleted)
        return deleted

    async def _delete_before(self, db, cutoff):
        # Counted before the delete; dependents go by cascade.
        cursor = await db.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM test_runs WHERE start_time < ?),
                (SELECT COUNT(*) FROM test_results r
                    JOIN test_runs t ON r.run_id = t.id WHERE t.start_time < ?),
                (SELECT COUNT(*) FROM screenshots s
                    JOIN test_results r ON s.test_result_id = r.id
                    JOIN test_runs t ON r.run_id = t.id WHERE t.start_time < ?)
            """,
            (cutoff, cutoff, cutoff),
        )
        counts = await cursor.fetchone()
        await db.execute("DELETE FROM test_runs WHERE start_time < ?", (cutoff,))
        return counts

    async def health_check(self) -> Dict[str, Any]:
        """Best-effort health report; failures become entries in `issues`."""
        issues = []
        connected = False
        statistics = None

        try:
            await self.fetch_value("SELECT 1")
            connected = True
        except PersistenceError as e:
            logger.error(f"Health check connection failed: {e.message}")
            issues.append(f"Database connection failed: {e.message}")

        if connected:
            try:
                statistics = await self.get_statistics()
            except PersistenceError as e:
                logger.error(f"Health check statistics failed: {e.message}")
                issues.append(f"Statistics unavailable: {e.message}")

        last_backup = None
        try:
            backups = await self.list_backups()
            if backups:
                last_backup = backups[0]["createdAt"]
                age_hours = (parse_iso(now_utc_iso()) - parse_iso(last_backup)).total_seconds() / 3600
                if age_hours > 2 * self.backup_interval_hours:
                    issues.append(f"Last backup is {age_hours:.0f} hours old")
        except OSError as e:
            logger.error(f"Health check could not list backups: {e}")
            issues.append(f"Backups unavailable: {e}")

        if statistics and statistics["freeRatio"] > 0.25:
            issues.append(f"High fragmentation: {statistics['freeRatio']:.0%} free pages")

        return {
            "isConnected": connected,
            "healthy": connected and not issues,
            "lastBackup": last_backup,
            "statistics": statistics,
            "issues": issues,
        }


# Global database instance
db = None


def initialize_database(data_dir: Path, filename: str = "aurora.db", enable_wal: bool = True,
                        busy_timeout_ms: int = 10000, backup_dir: str = "backups",
                        backup_interval_hours: float = 24):
    """Create the global database instance under data_dir."""
    global db
    data_dir = Path(data_dir)
    db = TelemetryDatabase(
        data_dir / filename,
        enable_wal=enable_wal,
        busy_timeout_ms=busy_timeout_ms,
        backup_dir=data_dir / backup_dir,
        backup_interval_hours=backup_interval_hours,
    )
    return db


def initialize_from_config(config: dict):
    """Create the global database instance from a validated configuration."""
    database = config["database"]
    return initialize_database(
        config["data"]["directory"],
        filename=database["filename"],
        enable_wal=database["enable_wal"],
        busy_timeout_ms=database["busy_timeout_ms"],
        backup_dir=database["backup_dir"],
        backup_interval_hours=database["backup_interval_hours"],
    )


async def close_database():
    """Close and forget the global database instance."""
    global db
    if db is not None:
        await db.close()
    db = None
