"""
Repositories over the Aurora telemetry tables.

Each repository works through the owning TelemetryDatabase, which holds the
single shared connection and serialises writes.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .models import (
    FilterPreset,
    FilterPresetPatch,
    RUN_STATUSES,
    RESULT_STATES,
    Screenshot,
    TestResult,
    TestResultPatch,
    TestRun,
    TestRunPatch,
)
from .query import (
    DEFAULT_LIMIT,
    Page,
    ResultFilter,
    RunFilter,
    SortSpec,
    build_result_count,
    build_result_query,
    build_run_count,
    build_run_query,
    escape_like,
)
from .utils import generate_id, now_utc_iso

logger = logging.getLogger(__name__)


def _insert_sql(table, row):
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    return f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values())


def _update_sql(table, changes, key="id"):
    assignments = ", ".join(f"{column} = ?" for column, _ in changes)
    return f"UPDATE {table} SET {assignments} WHERE {key} = ?", [value for _, value in changes]


def _stamp(entity):
    now = now_utc_iso()
    if getattr(entity, "created_at", None) is None:
        entity.created_at = now
    if hasattr(entity, "updated_at") and entity.updated_at is None:
        entity.updated_at = entity.created_at


class TestRunRepository:  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    """Persistence for TestRun rows."""

    def __init__(self, database):
        self.db = database

    async def create(self, run: TestRun) -> TestRun:
        if run.status not in RUN_STATUSES:
            raise ValidationError(f"Invalid run status: {run.status}")
        if not run.id:
            run.id = generate_id("run")
        _stamp(run)
        sql, params = _insert_sql("test_runs", run.to_row())
        await self.db.execute(sql, params)
        logger.debug(f"Created test run {run.id}")
        return run

    async def find_by_id(self, run_id: str) -> Optional[TestRun]:
        row = await self.db.fetch_one("SELECT * FROM test_runs WHERE id = ?", (run_id,))
        return TestRun.from_row(row) if row else None

    async def get(self, run_id: str) -> TestRun:
        run = await self.find_by_id(run_id)
        if run is None:
            raise NotFoundError("Test run", run_id)
        return run

    async def find_all(self, criteria: Optional[RunFilter] = None,
                       limit: int = DEFAULT_LIMIT, offset: int = 0) -> Page:
        criteria = criteria or RunFilter()
        sql, params = build_run_query(criteria, limit, offset)
        rows = await self.db.fetch_all(sql, params)
        count_sql, count_params = build_run_count(criteria)
        total = await self.db.fetch_value(count_sql, count_params, default=0)
        return Page([TestRun.from_row(row) for row in rows], total, limit, offset)

    async def find_recent(self, limit: int = 10) -> List[TestRun]:
        rows = await self.db.fetch_all(
            "SELECT * FROM test_runs ORDER BY start_time DESC, id DESC LIMIT ?", (limit,)
        )
        return [TestRun.from_row(row) for row in rows]

    async def update(self, run_id: str, patch: TestRunPatch) -> TestRun:
        """Apply the supplied fields. Terminal status is a single transition."""
        changes = patch.changes()
        async with self.db.transaction():
            current = await self.get(run_id)
            if not changes:
                return current
            new_status = dict(changes).get("status")
            if new_status is not None and current.is_terminal and new_status != current.status:
                raise ValidationError(
                    f"Test run {run_id} is already {current.status}; cannot change to {new_status}"
                )
            sql, params = _update_sql("test_runs", changes)
            updated = await self.db.execute(sql, params + [run_id])
            if updated == 0:
                raise NotFoundError("Test run", run_id)
        return await self.get(run_id)

    async def delete(self, run_id: str):
        deleted = await self.db.execute("DELETE FROM test_runs WHERE id = ?", (run_id,))
        if deleted == 0:
            raise NotFoundError("Test run", run_id)
        logger.info(f"Deleted test run {run_id}")

    async def delete_older_than(self, cutoff: str) -> int:
        return await self.db.execute("DELETE FROM test_runs WHERE start_time < ?", (cutoff,))

    async def search(self, text: str, limit: int = 50) -> List[TestRun]:
        pattern = f"%{escape_like(text)}%"
        rows = await self.db.fetch_all(
            """
            SELECT * FROM test_runs
            WHERE browser_name LIKE ? ESCAPE '\\'
               OR spec_files LIKE ? ESCAPE '\\'
               OR runner_version LIKE ? ESCAPE '\\'
               OR id LIKE ? ESCAPE '\\'
            ORDER BY start_time DESC, id DESC
            LIMIT ?
            """,
            (pattern, pattern, pattern, pattern, limit),
        )
        return [TestRun.from_row(row) for row in rows]

    async def get_statistics(self, date_from: Optional[str] = None,
                             date_to: Optional[str] = None) -> Dict[str, Any]:
        conditions, params = [], []
        if date_from:
            conditions.append("start_time >= ?")
            params.append(date_from)
        if date_to:
            conditions.append("start_time <= ?")
            params.append(date_to)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        row = await self.db.fetch_one(
            f"""
            SELECT
                COUNT(*) AS total_runs,
                COUNT(CASE WHEN status = 'completed' THEN 1 END) AS completed_runs,
                COUNT(CASE WHEN status = 'failed' THEN 1 END) AS failed_runs,
                COUNT(CASE WHEN status = 'running' THEN 1 END) AS running_runs,
                COUNT(CASE WHEN status = 'cancelled' THEN 1 END) AS cancelled_runs,
                AVG(duration) AS avg_duration,
                SUM(passed) AS total_passed,
                SUM(total_tests) AS total_tests
            FROM test_runs {where}
            """,
            params,
        )
        total_tests = row["total_tests"] or 0
        return {
            "totalRuns": row["total_runs"] or 0,
            "completedRuns": row["completed_runs"] or 0,
            "failedRuns": row["failed_runs"] or 0,
            "runningRuns": row["running_runs"] or 0,
            "cancelledRuns": row["cancelled_runs"] or 0,
            "averageDuration": round(row["avg_duration"] or 0),
            "passRate": round((row["total_passed"] or 0) / total_tests * 100, 2) if total_tests else 0,
        }

    async def get_trend_data(self, since: str) -> List[Dict[str, Any]]:
        """Per-day run aggregates for runs started at or after `since`."""
        rows = await self.db.fetch_all(
            """
            SELECT
                substr(start_time, 1, 10) AS date,
                COUNT(*) AS runs,
                SUM(total_tests) AS total,
                SUM(passed) AS passed,
                SUM(failed) AS failed,
                AVG(duration) AS avg_duration
            FROM test_runs
            WHERE start_time >= ?
            GROUP BY substr(start_time, 1, 10)
            ORDER BY date
            """,
            (since,),
        )
        trends = []
        for row in rows:
            total = row["total"] or 0
            trends.append({
                "date": row["date"],
                "runs": row["runs"] or 0,
                "totalTests": total,
                "passed": row["passed"] or 0,
                "failed": row["failed"] or 0,
                "duration": round(row["avg_duration"] or 0),
                "passRate": round((row["passed"] or 0) / total * 100, 2) if total else 0,
            })
        return trends


class TestResultRepository:  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    """Persistence for TestResult rows."""

    def __init__(self, database):
        self.db = database

    async def create(self, result: TestResult) -> TestResult:
        if result.state not in RESULT_STATES:
            raise ValidationError(f"Invalid test state: {result.state}")
        run_exists = await self.db.fetch_value(
            "SELECT 1 FROM test_runs WHERE id = ?", (result.run_id,)
        )
        if not run_exists:
            raise NotFoundError("Test run", result.run_id)
        if not result.id:
            result.id = generate_id("result")
        result.pending = result.state == "pending"
        _stamp(result)
        sql, params = _insert_sql("test_results", result.to_row())
        await self.db.execute(sql, params)
        return result

    async def find_by_id(self, result_id: str) -> Optional[TestResult]:
        row = await self.db.fetch_one("SELECT * FROM test_results WHERE id = ?", (result_id,))
        return TestResult.from_row(row) if row else None

    async def get(self, result_id: str) -> TestResult:
        result = await self.find_by_id(result_id)
        if result is None:
            raise NotFoundError("Test result", result_id)
        return result

    async def find_by_run_id(self, run_id: str) -> List[TestResult]:
        rows = await self.db.fetch_all(
            "SELECT * FROM test_results WHERE run_id = ? ORDER BY start_time ASC, id ASC",
            (run_id,),
        )
        return [TestResult.from_row(row) for row in rows]

    async def find_by_file(self, file: str, limit: int = DEFAULT_LIMIT) -> List[TestResult]:
        rows = await self.db.fetch_all(
            "SELECT * FROM test_results WHERE file = ? ORDER BY start_time DESC, id DESC LIMIT ?",
            (file, limit),
        )
        return [TestResult.from_row(row) for row in rows]

    async def find_by_title(self, run_id: str, full_title: str) -> Optional[TestResult]:
        """Most recent result of a test within a run."""
        row = await self.db.fetch_one(
            """
            SELECT * FROM test_results
            WHERE run_id = ? AND (full_title = ? OR title = ?)
            ORDER BY start_time DESC, id DESC
            LIMIT 1
            """,
            (run_id, full_title, full_title),
        )
        return TestResult.from_row(row) if row else None

    async def find_with_filters(self, criteria: Optional[ResultFilter] = None,
                                sort: Optional[SortSpec] = None,
                                limit: int = DEFAULT_LIMIT, offset: int = 0) -> Page:
        criteria = criteria or ResultFilter()
        sql, params = build_result_query(criteria, sort, limit, offset)
        rows = await self.db.fetch_all(sql, params)
        count_sql, count_params = build_result_count(criteria)
        total = await self.db.fetch_value(count_sql, count_params, default=0)
        return Page([TestResult.from_row(row) for row in rows], total, limit, offset)

    async def exists_for_run(self, run_id: str, full_title: str, file: Optional[str],
                             start_time: Optional[str]) -> Optional[str]:
        """Return the id of an identical, already stored result (duplicate delivery)."""
        return await self.db.fetch_value(
            """
            SELECT id FROM test_results
            WHERE run_id = ? AND full_title = ? AND file IS ? AND start_time IS ?
            LIMIT 1
            """,
            (run_id, full_title, file, start_time),
        )

    async def update(self, result_id: str, patch: TestResultPatch) -> TestResult:
        """Apply the supplied fields. A terminal result only takes metadata."""
        changes = patch.changes()
        async with self.db.transaction():
            current = await self.get(result_id)
            if not changes:
                return current
            managed = patch.lifecycle_fields()
            if managed and current.is_terminal:
                raise ValidationError(
                    f"Test result {result_id} is already {current.state}; cannot change {', '.join(managed)}"
                )
            sql, params = _update_sql("test_results", changes)
            updated = await self.db.execute(sql, params + [result_id])
            if updated == 0:
                raise NotFoundError("Test result", result_id)
        return await self.get(result_id)

    async def delete(self, result_id: str):
        deleted = await self.db.execute("DELETE FROM test_results WHERE id = ?", (result_id,))
        if deleted == 0:
            raise NotFoundError("Test result", result_id)

    async def search(self, text: str, limit: int = 50) -> List[TestResult]:
        pattern = f"%{escape_like(text)}%"
        rows = await self.db.fetch_all(
            """
            SELECT * FROM test_results
            WHERE title LIKE ? ESCAPE '\\'
               OR full_title LIKE ? ESCAPE '\\'
               OR error_message LIKE ? ESCAPE '\\'
               OR file LIKE ? ESCAPE '\\'
            ORDER BY start_time DESC, id DESC
            LIMIT ?
            """,
            (pattern, pattern, pattern, pattern, limit),
        )
        return [TestResult.from_row(row) for row in rows]

    async def count_states(self, run_id: str) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            "SELECT state, COUNT(*) AS count FROM test_results WHERE run_id = ? GROUP BY state",
            (run_id,),
        )
        return {row["state"]: row["count"] for row in rows}

    async def get_statistics(self, run_id: Optional[str] = None) -> Dict[str, Any]:
        where, params = ("WHERE run_id = ?", (run_id,)) if run_id else ("", ())
        row = await self.db.fetch_one(
            f"""
            SELECT
                COUNT(*) AS total,
                COUNT(CASE WHEN state = 'passed' THEN 1 END) AS passed,
                COUNT(CASE WHEN state = 'failed' THEN 1 END) AS failed,
                COUNT(CASE WHEN state = 'skipped' THEN 1 END) AS skipped,
                COUNT(CASE WHEN state = 'pending' THEN 1 END) AS pending,
                COUNT(CASE WHEN retries > 0 THEN 1 END) AS retried,
                AVG(duration) AS avg_duration,
                SUM(duration) AS total_duration
            FROM test_results {where}
            """,
            params,
        )
        total = row["total"] or 0
        return {
            "total": total,
            "passed": row["passed"] or 0,
            "failed": row["failed"] or 0,
            "skipped": row["skipped"] or 0,
            "pending": row["pending"] or 0,
            "retried": row["retried"] or 0,
            "averageDuration": round(row["avg_duration"] or 0),
            "totalDuration": row["total_duration"] or 0,
            "passRate": round((row["passed"] or 0) / total * 100, 2) if total else 0,
        }


class ScreenshotRepository:
    """Persistence for Screenshot rows."""

    def __init__(self, database):
        self.db = database

    async def create(self, screenshot: Screenshot) -> Screenshot:
        result_exists = await self.db.fetch_value(
            "SELECT 1 FROM test_results WHERE id = ?", (screenshot.test_result_id,)
        )
        if not result_exists:
            raise NotFoundError("Test result", screenshot.test_result_id)
        if not screenshot.id:
            screenshot.id = generate_id("shot")
        if screenshot.taken_at is None:
            screenshot.taken_at = now_utc_iso()
        _stamp(screenshot)
        sql, params = _insert_sql("screenshots", screenshot.to_row())
        await self.db.execute(sql, params)
        return screenshot

    async def find_by_id(self, screenshot_id: str) -> Optional[Screenshot]:
        row = await self.db.fetch_one("SELECT * FROM screenshots WHERE id = ?", (screenshot_id,))
        return Screenshot.from_row(row) if row else None

    async def find_by_result(self, result_id: str) -> List[Screenshot]:
        rows = await self.db.fetch_all(
            "SELECT * FROM screenshots WHERE test_result_id = ? ORDER BY taken_at ASC, id ASC",
            (result_id,),
        )
        return [Screenshot.from_row(row) for row in rows]

    async def delete(self, screenshot_id: str):
        deleted = await self.db.execute("DELETE FROM screenshots WHERE id = ?", (screenshot_id,))
        if deleted == 0:
            raise NotFoundError("Screenshot", screenshot_id)


class FilterPresetRepository:
    """Persistence for saved dashboard filter presets."""

    def __init__(self, database):
        self.db = database

    async def create(self, preset: FilterPreset) -> FilterPreset:
        if not preset.name or not preset.name.strip():
            raise ValidationError("name must be a non-empty string")
        if not preset.id:
            preset.id = generate_id("preset")
        _stamp(preset)
        sql, params = _insert_sql("filter_presets", preset.to_row())
        # The insert trigger clears any previous default.
        await self.db.execute(sql, params)
        return preset

    async def find_all(self) -> List[FilterPreset]:
        rows = await self.db.fetch_all(
            "SELECT * FROM filter_presets ORDER BY is_default DESC, name ASC, id ASC"
        )
        return [FilterPreset.from_row(row) for row in rows]

    async def find_by_id(self, preset_id: str) -> Optional[FilterPreset]:
        row = await self.db.fetch_one("SELECT * FROM filter_presets WHERE id = ?", (preset_id,))
        return FilterPreset.from_row(row) if row else None

    async def get(self, preset_id: str) -> FilterPreset:
        preset = await self.find_by_id(preset_id)
        if preset is None:
            raise NotFoundError("Filter preset", preset_id)
        return preset

    async def get_default(self) -> Optional[FilterPreset]:
        row = await self.db.fetch_one("SELECT * FROM filter_presets WHERE is_default = 1 LIMIT 1")
        return FilterPreset.from_row(row) if row else None

    async def update(self, preset_id: str, patch: FilterPresetPatch) -> FilterPreset:
        changes = patch.changes()
        if not changes:
            return await self.get(preset_id)
        sql, params = _update_sql("filter_presets", changes)
        updated = await self.db.execute(sql, params + [preset_id])
        if updated == 0:
            raise NotFoundError("Filter preset", preset_id)
        return await self.get(preset_id)

    async def set_default(self, preset_id: str) -> FilterPreset:
        async with self.db.transaction():
            await self.get(preset_id)
            await self.db.execute(
                "UPDATE filter_presets SET is_default = 0 WHERE is_default = 1 AND id != ?",
                (preset_id,),
            )
            await self.db.execute(
                "UPDATE filter_presets SET is_default = 1 WHERE id = ?", (preset_id,)
            )
        return await self.get(preset_id)

    async def delete(self, preset_id: str):
        deleted = await self.db.execute("DELETE FROM filter_presets WHERE id = ?", (preset_id,))
        if deleted == 0:
            raise NotFoundError("Filter preset", preset_id)


class MetadataRepository:
    """Key/value metadata, including the schema version."""

    def __init__(self, database):
        self.db = database

    async def get(self, key: str, default=None):
        return await self.db.fetch_value("SELECT value FROM metadata WHERE key = ?", (key,), default)

    async def set(self, key: str, value):
        await self.db.execute(
            """
            INSERT INTO metadata (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, None if value is None else str(value)),
        )

    async def all(self) -> Dict[str, Any]:
        rows = await self.db.fetch_all("SELECT key, value FROM metadata ORDER BY key")
        return {row["key"]: row["value"] for row in rows}
