"""
Analytics over stored telemetry: flaky-test detection and statistics.
"""

import logging
from typing import List, Optional

from .errors import ValidationError
from .models import FlakyTest
from .utils import iso_days_ago

logger = logging.getLogger(__name__)

FLAKY_WINDOW_DAYS = 30
FLAKY_MIN_SAMPLES = 5
DEFAULT_FLAKY_THRESHOLD = 0.1


async def find_flaky_tests(database, threshold: float = DEFAULT_FLAKY_THRESHOLD,
                           limit: Optional[int] = None, window_days: int = FLAKY_WINDOW_DAYS,
                           now=None) -> List[FlakyTest]:
    """Tests whose failure ratio in the trailing window is in [threshold, 1).

    Groups results by (full_title, file) and ignores groups with fewer than
    five samples. Tests that always fail are broken, not flaky, so a ratio
    of exactly 1.0 is excluded.
    """
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0 <= threshold <= 1:
        raise ValidationError("threshold must be a number between 0 and 1")
    if limit is not None and limit < 1:
        raise ValidationError("limit must be >= 1")

    since = iso_days_ago(window_days, now=now)
    sql = """
        SELECT
            full_title,
            file,
            COUNT(*) AS total_runs,
            SUM(CASE WHEN state = 'failed' THEN 1 ELSE 0 END) AS failures,
            CAST(SUM(CASE WHEN state = 'failed' THEN 1 ELSE 0 END) AS REAL) / COUNT(*) AS failure_rate,
            MAX(CASE WHEN state = 'failed' THEN start_time END) AS last_failure
        FROM test_results
        WHERE start_time >= ?
        GROUP BY full_title, file
        HAVING total_runs >= ? AND failure_rate >= ? AND failure_rate < 1.0
        ORDER BY failure_rate DESC, total_runs DESC, full_title ASC
    """
    params = [since, FLAKY_MIN_SAMPLES, threshold]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)

    rows = await database.fetch_all(sql, params)
    return [
        FlakyTest(
            full_title=row["full_title"],
            file=row["file"],
            total_runs=row["total_runs"],
            failures=row["failures"],
            failure_rate=round(row["failure_rate"], 2),
            last_failure=row["last_failure"],
        )
        for row in rows
    ]


async def get_overview_statistics(database):
    """Aggregate run and result statistics."""
    runs = await database.runs.get_statistics()
    results = await database.results.get_statistics()
    return {"runs": runs, "results": results}


async def get_run_statistics(database, run_id: str):
    """Statistics for a single run; raises NotFoundError if it does not exist."""
    run = await database.runs.get(run_id)
    results = await database.results.get_statistics(run_id)
    return {
        "run": run.to_dict(),
        "results": results,
        "flakyCandidates": results["retried"],
    }


async def get_trends(database, days: int = 30, now=None):
    """Per-day aggregates over the last `days` days."""
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise ValidationError("days must be a positive integer")
    return await database.runs.get_trend_data(iso_days_ago(days, now=now))
