#!/usr/bin/env python3
"""
Tests for the entity repositories.
"""

import pytest

from aurora_server.errors import NotFoundError, ValidationError
from aurora_server.models import (
    CIInfo,
    FilterPreset,
    FilterPresetPatch,
    Screenshot,
    TestError,
    TestResult,
    TestResultPatch,
    TestRun,
    TestRunPatch,
    Viewport,
)


class TestRunRepository:
    """Test TestRun persistence."""

    @pytest.mark.asyncio
    async def test_create_then_get_returns_equal_entity(self, temp_db, make_run):
        run = await make_run(
            config={"baseUrl": "http://localhost:3000", "retries": 2},
            ci_info=CIInfo(provider="github-actions", branch="main", commit="abc123", is_pr=False),
            runner_version="13.6.0",
        )

        stored = await temp_db.runs.get(run.id)

        assert stored == run
        assert stored.config["retries"] == 2
        assert stored.ci_info.provider == "github-actions"

    @pytest.mark.asyncio
    async def test_get_unknown_run_raises_not_found(self, temp_db):
        with pytest.raises(NotFoundError) as exc_info:
            await temp_db.runs.get("missing")
        assert exc_info.value.status == 404
        assert await temp_db.runs.find_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_update_and_delete_unknown_run_raise_not_found(self, temp_db):
        with pytest.raises(NotFoundError):
            await temp_db.runs.update("missing", TestRunPatch(passed=1))
        with pytest.raises(NotFoundError):
            await temp_db.runs.delete("missing")

    @pytest.mark.asyncio
    async def test_update_applies_only_supplied_fields(self, temp_db, make_run):
        run = await make_run()

        updated = await temp_db.runs.update(run.id, TestRunPatch(passed=4, failed=1))

        assert updated.passed == 4
        assert updated.failed == 1
        assert updated.browser_name == run.browser_name
        assert updated.status == "running"

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, temp_db, make_run):
        run = await make_run()
        await temp_db.runs.update(run.id, TestRunPatch(status="completed"))

        with pytest.raises(ValidationError):
            await temp_db.runs.update(run.id, TestRunPatch(status="running"))
        # Re-asserting the same terminal status is allowed.
        assert (await temp_db.runs.update(run.id, TestRunPatch(status="completed"))).status == "completed"

    @pytest.mark.asyncio
    async def test_patch_rejects_unknown_and_invalid_fields(self):
        with pytest.raises(ValidationError):
            TestRunPatch.from_dict({"id": "new-id"})
        with pytest.raises(ValidationError):
            TestRunPatch.from_dict({"status": "exploded"}).changes()
        with pytest.raises(ValidationError):
            TestRunPatch.from_dict({"passed": -1}).changes()

    @pytest.mark.asyncio
    async def test_delete_cascades_to_results_and_screenshots(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(run.id, state="failed")
        await temp_db.screenshots.create(Screenshot(
            id="shot-1", test_result_id=result.id, name="failure.png", path="/tmp/failure.png",
        ))

        await temp_db.runs.delete(run.id)

        assert await temp_db.results.find_by_id(result.id) is None
        assert await temp_db.screenshots.find_by_id("shot-1") is None

    @pytest.mark.asyncio
    async def test_find_all_pages_newest_first(self, temp_db, make_run):
        for _ in range(5):
            await make_run()

        page = await temp_db.runs.find_all(limit=2, offset=0)

        assert page.total == 5
        assert [r.id for r in page.items] == ["run-005", "run-004"]
        assert page.pagination() == {"total": 5, "limit": 2, "offset": 0, "hasMore": True}

    @pytest.mark.asyncio
    async def test_statistics(self, temp_db, make_run):
        await make_run(status="completed", total_tests=10, passed=8, failed=2, duration=1000)
        await make_run(status="failed", total_tests=10, passed=2, failed=8, duration=3000)
        await make_run()

        stats = await temp_db.runs.get_statistics()

        assert stats["totalRuns"] == 3
        assert stats["completedRuns"] == 1
        assert stats["failedRuns"] == 1
        assert stats["runningRuns"] == 1
        assert stats["averageDuration"] == 2000
        assert stats["passRate"] == 50.0

    @pytest.mark.asyncio
    async def test_search_matches_spec_files_literally(self, temp_db, make_run):
        await make_run(spec_files=["checkout_100%.cy.ts"])
        await make_run(spec_files=["checkout_1000.cy.ts"])

        found = await temp_db.runs.search("100%")

        assert len(found) == 1
        assert found[0].spec_files == ["checkout_100%.cy.ts"]


class TestResultRepository:
    """Test TestResult persistence."""

    @pytest.mark.asyncio
    async def test_create_then_get_returns_equal_entity(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(
            run.id,
            state="failed",
            error=TestError(name="AssertionError", message="boom", stack="at line 1", diff="- a\n+ b"),
            tags=["smoke", "auth"],
            viewport=Viewport(1280, 720),
            retries=1,
            current_retry=1,
        )

        assert await temp_db.results.get(result.id) == result

    @pytest.mark.asyncio
    async def test_create_for_unknown_run_raises_not_found(self, temp_db):
        with pytest.raises(NotFoundError):
            await temp_db.results.create(TestResult(
                id="orphan", run_id="missing", title="t", full_title="s t", state="passed",
            ))

    @pytest.mark.asyncio
    async def test_pending_flag_follows_state(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(run.id, state="pending")
        assert result.pending is True

        updated = await temp_db.results.update(result.id, TestResultPatch(state="passed", duration=12))

        assert updated.pending is False
        assert updated.state == "passed"
        assert updated.duration == 12

    @pytest.mark.asyncio
    async def test_terminal_result_only_takes_metadata(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(run.id, state="failed")

        with pytest.raises(ValidationError):
            await temp_db.results.update(result.id, TestResultPatch(state="pending"))
        with pytest.raises(ValidationError):
            await temp_db.results.update(result.id, TestResultPatch(retries=3, tags=["x"]))
        tagged = await temp_db.results.update(result.id, TestResultPatch(tags=["regression"]))

        assert tagged.state == "failed"
        assert tagged.retries == 0
        assert tagged.tags == ["regression"]

    @pytest.mark.asyncio
    async def test_metadata_patch_refuses_lifecycle_fields(self):
        with pytest.raises(ValidationError):
            TestResultPatch.metadata_from_dict({"state": "passed"})
        with pytest.raises(ValidationError):
            TestRunPatch.metadata_from_dict({"totalTests": 3})
        assert TestRunPatch.metadata_from_dict({"browserName": "firefox"}).lifecycle_fields() == []

    @pytest.mark.asyncio
    async def test_update_error_and_clear_it(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(run.id)

        updated = await temp_db.results.update(
            result.id, TestResultPatch.from_dict({"error": {"name": "TypeError", "message": "x is undefined"}})
        )
        assert updated.error.name == "TypeError"
        assert updated.error.message == "x is undefined"

        cleared = await temp_db.results.update(result.id, TestResultPatch(error=None))
        assert cleared.error is None

    @pytest.mark.asyncio
    async def test_update_and_delete_unknown_result_raise_not_found(self, temp_db):
        with pytest.raises(NotFoundError):
            await temp_db.results.update("missing", TestResultPatch(duration=1))
        with pytest.raises(NotFoundError):
            await temp_db.results.delete("missing")

    @pytest.mark.asyncio
    async def test_find_by_run_id_orders_by_start_time(self, temp_db, make_run, make_result):
        run = await make_run()
        late = await make_result(run.id, start_time="2026-03-15T11:00:00.000Z")
        early = await make_result(run.id, start_time="2026-03-15T10:00:00.000Z")

        results = await temp_db.results.find_by_run_id(run.id)

        assert [r.id for r in results] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_statistics_for_run(self, temp_db, make_run, make_result):
        run = await make_run()
        other = await make_run()
        await make_result(run.id, state="passed", duration=100)
        await make_result(run.id, state="passed", duration=300, retries=1)
        await make_result(run.id, state="failed", duration=200)
        await make_result(run.id, state="skipped", duration=0)
        await make_result(other.id, state="failed")

        stats = await temp_db.results.get_statistics(run.id)

        assert stats["total"] == 4
        assert stats["passed"] == 2
        assert stats["failed"] == 1
        assert stats["skipped"] == 1
        assert stats["retried"] == 1
        assert stats["totalDuration"] == 600
        assert stats["averageDuration"] == 150
        assert stats["passRate"] == 50.0

    @pytest.mark.asyncio
    async def test_count_states(self, temp_db, make_run, make_result):
        run = await make_run()
        await make_result(run.id, state="passed")
        await make_result(run.id, state="passed")
        await make_result(run.id, state="failed")

        assert await temp_db.results.count_states(run.id) == {"passed": 2, "failed": 1}

    @pytest.mark.asyncio
    async def test_delete_removes_screenshots(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(run.id)
        await temp_db.screenshots.create(Screenshot(
            id="shot-1", test_result_id=result.id, name="a.png", path="/tmp/a.png",
        ))

        await temp_db.results.delete(result.id)

        assert await temp_db.screenshots.find_by_result(result.id) == []


class TestScreenshotRepository:
    """Test Screenshot persistence."""

    @pytest.mark.asyncio
    async def test_create_for_unknown_result_raises_not_found(self, temp_db):
        with pytest.raises(NotFoundError):
            await temp_db.screenshots.create(Screenshot(
                id=None, test_result_id="missing", name="a.png", path="/tmp/a.png",
            ))

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamp(self, temp_db, make_run, make_result):
        run = await make_run()
        result = await make_result(run.id)

        shot = await temp_db.screenshots.create(Screenshot(
            id=None, test_result_id=result.id, name="a.png", path="/tmp/a.png", width=800, height=600,
        ))

        assert shot.id.startswith("shot_")
        assert shot.taken_at is not None
        assert await temp_db.screenshots.find_by_id(shot.id) == shot


class TestFilterPresetRepository:
    """Test FilterPreset persistence."""

    @pytest.mark.asyncio
    async def test_round_trip(self, temp_db):
        preset = await temp_db.presets.create(FilterPreset(
            id=None, name="Failed on chrome", filters={"status": ["failed"], "browser": ["chrome"]},
        ))

        assert await temp_db.presets.get(preset.id) == preset

    @pytest.mark.asyncio
    async def test_set_default_keeps_a_single_default(self, temp_db):
        a = await temp_db.presets.create(FilterPreset(id=None, name="A", is_default=True))
        b = await temp_db.presets.create(FilterPreset(id=None, name="B"))

        await temp_db.presets.set_default(b.id)

        assert (await temp_db.presets.get(a.id)).is_default is False
        assert (await temp_db.presets.get_default()).id == b.id

    @pytest.mark.asyncio
    async def test_update_and_delete(self, temp_db):
        preset = await temp_db.presets.create(FilterPreset(id=None, name="A"))

        updated = await temp_db.presets.update(preset.id, FilterPresetPatch(name="Renamed"))
        assert updated.name == "Renamed"

        await temp_db.presets.delete(preset.id)
        with pytest.raises(NotFoundError):
            await temp_db.presets.get(preset.id)
        with pytest.raises(NotFoundError):
            await temp_db.presets.set_default(preset.id)

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected(self, temp_db):
        with pytest.raises(ValidationError):
            await temp_db.presets.create(FilterPreset(id=None, name="  "))
        preset = await temp_db.presets.create(FilterPreset(id=None, name="A"))
        with pytest.raises(ValidationError):
            await temp_db.presets.update(preset.id, FilterPresetPatch(name=""))


class TestMetadataRepository:
    """Test key/value metadata."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, temp_db):
        await temp_db.metadata.set("last_cleanup", "2026-03-15")
        await temp_db.metadata.set("last_cleanup", "2026-03-16")

        assert await temp_db.metadata.get("last_cleanup") == "2026-03-16"
        assert await temp_db.metadata.get("absent", "default") == "default"
        assert "schema_version" in await temp_db.metadata.all()
