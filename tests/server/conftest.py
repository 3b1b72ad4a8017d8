"""
Shared fixtures for the server test suite.
"""

import itertools
import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from aurora_server import database
from aurora_server.config import validate_config
from aurora_server.models import BrowserInfo, TestError, TestResult, TestRun

# Fixed clock so time-window tests do not depend on the wall clock.
NOW = datetime(2026, 3, 15, 12, 0, 0)


def iso(dt):
    return dt.isoformat(timespec="milliseconds") + "Z"


def iso_minutes_ago(minutes, now=NOW):
    return iso(now - timedelta(minutes=minutes))


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database for testing."""
    temp_dir = tempfile.mkdtemp()

    # Initialize database
    database.initialize_database(Path(temp_dir))
    await database.db.initialize()

    yield database.db

    # Cleanup
    await database.close_database()
    shutil.rmtree(temp_dir)


@pytest.fixture
def test_config(tmp_path):
    """A validated configuration rooted in a temporary directory."""
    return validate_config({
        "data": {"directory": str(tmp_path / "reports")},
        "server": {"shutdown_timeout": 1},
        "realtime": {"heartbeat_seconds": 5},
    })


@pytest.fixture
def make_run(temp_db):
    """Factory that stores a TestRun with sensible defaults."""
    counter = itertools.count(1)

    async def factory(**overrides):
        n = next(counter)
        fields = {
            "id": f"run-{n:03d}",
            "start_time": iso_minutes_ago(60 - n),
            "status": "running",
            "browser_name": "chrome",
            "browser_version": "120.0",
            "spec_files": ["cypress/e2e/login.cy.ts"],
        }
        fields.update(overrides)
        return await temp_db.runs.create(TestRun(**fields))

    return factory


@pytest.fixture
def make_result(temp_db):
    """Factory that stores a TestResult with sensible defaults."""
    counter = itertools.count(1)

    async def factory(run_id, **overrides):
        n = next(counter)
        fields = {
            "id": f"result-{n:03d}",
            "run_id": run_id,
            "title": f"test {n}",
            "full_title": f"suite test {n}",
            "state": "passed",
            "duration": 100 * n,
            "file": "cypress/e2e/login.cy.ts",
            "start_time": iso_minutes_ago(30 - n),
            "browser": BrowserInfo("chrome", "120.0"),
        }
        fields.update(overrides)
        if fields["state"] == "failed" and "error" not in overrides:
            fields["error"] = TestError(name="AssertionError", message="expected true to be false")
        return await temp_db.results.create(TestResult(**fields))

    return factory
