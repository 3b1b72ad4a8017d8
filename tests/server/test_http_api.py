#!/usr/bin/env python3
"""
Tests for HTTP API endpoints and handlers.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from aurora_server import api_handlers
from aurora_server.ingestion import IngestionGateway
from aurora_server.models import Screenshot
from aurora_server.utils import now_utc_iso


def make_request(query=None, match_info=None, body=None, app=None):
    """Build a mock aiohttp request for calling a handler directly."""
    request = MagicMock()
    request.query = query or {}
    request.match_info = match_info or {}
    request.app = app if app is not None else {}
    request.can_read_body = body is not None
    if isinstance(body, Exception):
        request.json = AsyncMock(side_effect=body)
    else:
        request.json = AsyncMock(return_value=body)
    return request


def payload(response):
    return json.loads(response.text)


@pytest.fixture
def app(test_config):
    return {"config": test_config, "hub": MagicMock()}


class TestRunEndpoints:
    """Test the /api/test-runs endpoints."""

    @pytest.mark.asyncio
    async def test_list_runs_with_pagination(self, temp_db, make_run):
        """Runs are listed newest first with pagination info."""
        for _ in range(3):
            await make_run()

        response = await api_handlers.api_test_runs_handler(make_request(query={"limit": "2"}))
        body = payload(response)

        assert response.status == 200
        assert body["success"] is True
        assert [r["id"] for r in body["data"]] == ["run-003", "run-002"]
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["hasMore"] is True

    @pytest.mark.asyncio
    async def test_list_runs_rejects_bad_filter(self, temp_db):
        """An unknown status is a validation error."""
        response = await api_handlers.api_test_runs_handler(make_request(query={"status": "passed"}))
        body = payload(response)

        assert response.status == 400
        assert body == {"success": False, "error": "validation_error", "message": body["message"]}

    @pytest.mark.asyncio
    async def test_run_details(self, temp_db, make_run, make_result):
        """Run details embed the run's results."""
        run = await make_run()
        await make_result(run.id)

        response = await api_handlers.api_test_run_details_handler(make_request(match_info={"run_id": run.id}))
        body = payload(response)

        assert response.status == 200
        assert body["data"]["id"] == run.id
        assert len(body["data"]["results"]) == 1

    @pytest.mark.asyncio
    async def test_run_details_not_found(self, temp_db):
        """A missing run is a 404 with a not_found error."""
        response = await api_handlers.api_test_run_details_handler(make_request(match_info={"run_id": "nope"}))
        body = payload(response)

        assert response.status == 404
        assert body["error"] == "not_found"
        assert body["message"] == "Test run not found: nope"

    @pytest.mark.asyncio
    async def test_update_run(self, temp_db, make_run):
        """Patching a run applies only the supplied fields."""
        run = await make_run()

        response = await api_handlers.api_test_run_update_handler(make_request(
            match_info={"run_id": run.id}, body={"runnerVersion": "13.6.0", "specFiles": ["a.cy.ts"]},
        ))
        body = payload(response)

        assert response.status == 200
        assert body["data"]["runnerVersion"] == "13.6.0"
        assert body["data"]["specFiles"] == ["a.cy.ts"]
        assert body["data"]["status"] == "running"
        assert body["data"]["browser"]["name"] == "chrome"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("patch", [
        {"status": "completed"},
        {"passed": 4},
        {"endTime": "2026-03-15T12:00:00.000Z"},
        {"duration": 1000, "runnerVersion": "13.6.0"},
    ])
    async def test_update_run_refuses_lifecycle_fields(self, temp_db, make_run, patch):
        """Status, counts and timing are only written by run-end."""
        run = await make_run()

        response = await api_handlers.api_test_run_update_handler(make_request(
            match_info={"run_id": run.id}, body=patch,
        ))

        assert response.status == 400
        assert payload(response)["error"] == "validation_error"
        stored = await temp_db.runs.get(run.id)
        assert stored.status == "running"
        assert stored.passed == 0
        assert stored.end_time is None
        assert stored.runner_version == run.runner_version

    @pytest.mark.asyncio
    async def test_run_end_still_finalises_after_rejected_update(self, temp_db, app):
        """A refused status patch leaves the run for run-end to finalise."""
        gateway = IngestionGateway(temp_db, reporters=[])
        ctx = await gateway.run_start({"runId": "run-live", "browser": {"name": "chrome"}})
        await gateway.spec_after(ctx, "login.cy.ts", {"tests": [
            {"title": ["login", "works"], "state": "passed", "duration": 10},
            {"title": ["login", "rejects"], "state": "failed", "duration": 20, "err": {"message": "nope"}},
        ]})

        rejected = await api_handlers.api_test_run_update_handler(make_request(
            match_info={"run_id": ctx.run_id}, body={"status": "completed"}, app=app,
        ))
        run = await gateway.run_end(ctx, {})

        assert rejected.status == 400
        assert run.status == "failed"
        assert run.total_tests == 2
        assert run.failed == 1
        assert run.end_time is not None

    @pytest.mark.asyncio
    async def test_update_run_rejects_unknown_field_and_bad_json(self, temp_db, make_run):
        """Unknown fields and malformed JSON are validation errors."""
        run = await make_run()

        unknown = await api_handlers.api_test_run_update_handler(make_request(
            match_info={"run_id": run.id}, body={"id": "other"},
        ))
        malformed = await api_handlers.api_test_run_update_handler(make_request(
            match_info={"run_id": run.id}, body=ValueError("Expecting value"),
        ))
        missing = await api_handlers.api_test_run_update_handler(make_request(match_info={"run_id": run.id}))

        assert unknown.status == 400
        assert malformed.status == 400
        assert missing.status == 400

    @pytest.mark.asyncio
    async def test_delete_run_broadcasts(self, temp_db, make_run, app):
        """Deleting a run removes it and notifies subscribers."""
        run = await make_run()

        response = await api_handlers.api_test_run_delete_handler(make_request(
            match_info={"run_id": run.id}, app=app,
        ))

        assert response.status == 200
        assert payload(response)["data"] == {"id": run.id, "deleted": True}
        assert await temp_db.runs.find_by_id(run.id) is None
        app["hub"].run_deleted.assert_called_once_with(run.id)

    @pytest.mark.asyncio
    async def test_statistics_overview_and_trends(self, temp_db, make_run, make_result):
        """Statistics endpoints report aggregates."""
        run = await make_run()
        await make_result(run.id, state="failed")

        stats = await api_handlers.api_test_run_statistics_handler(make_request(match_info={"run_id": run.id}))
        overview = await api_handlers.api_test_runs_overview_handler(make_request())
        trends = await api_handlers.api_test_runs_trends_handler(make_request(query={"days": "7"}))
        bad_trends = await api_handlers.api_test_runs_trends_handler(make_request(query={"days": "0"}))

        assert payload(stats)["data"]["results"]["failed"] == 1
        assert payload(overview)["data"]["runs"]["totalRuns"] == 1
        assert trends.status == 200
        assert bad_trends.status == 400

    @pytest.mark.asyncio
    async def test_search_runs(self, temp_db, make_run):
        """Run search matches ids and requires a query."""
        await make_run(id="nightly-42")
        await make_run()

        found = await api_handlers.api_test_runs_search_handler(make_request(body={"query": "nightly"}))
        empty = await api_handlers.api_test_runs_search_handler(make_request(body={"query": "  "}))

        assert [r["id"] for r in payload(found)["data"]] == ["nightly-42"]
        assert empty.status == 400

    @pytest.mark.asyncio
    async def test_cleanup_runs(self, temp_db, make_run, app):
        """Cleanup defaults to the configured retention."""
        await make_run(start_time="2020-01-01T00:00:00.000Z")
        await make_run(start_time=now_utc_iso())

        response = await api_handlers.api_test_runs_cleanup_handler(make_request(app=app))
        invalid = await api_handlers.api_test_runs_cleanup_handler(make_request(
            query={"retentionDays": "0"}, app=app,
        ))

        assert payload(response)["data"]["runs"] == 1
        assert invalid.status == 400


class TestResultEndpoints:
    """Test the /api/test-results endpoints."""

    @pytest.mark.asyncio
    async def test_filtered_results(self, temp_db, make_run, make_result):
        """Filtering by status returns only matching results."""
        run = await make_run()
        for state in ("passed", "passed", "passed", "failed", "failed"):
            await make_result(run.id, state=state)

        response = await api_handlers.api_test_results_handler(make_request(query={"status": "failed"}))
        body = payload(response)

        assert response.status == 200
        assert len(body["data"]) == 2
        assert body["pagination"]["total"] == 2
        assert all(r["state"] == "failed" for r in body["data"])

    @pytest.mark.asyncio
    async def test_result_details_include_screenshots(self, temp_db, make_run, make_result):
        """Result details embed screenshots."""
        run = await make_run()
        result = await make_result(run.id, state="failed")
        await temp_db.screenshots.create(Screenshot(id=None, test_result_id=result.id, name="a.png", path="/a.png"))

        response = await api_handlers.api_test_result_details_handler(make_request(
            match_info={"result_id": result.id},
        ))
        body = payload(response)

        assert body["data"]["id"] == result.id
        assert body["data"]["screenshots"][0]["name"] == "a.png"

    @pytest.mark.asyncio
    async def test_update_and_delete_result(self, temp_db, make_run, make_result, app):
        """Result updates and deletes notify subscribers."""
        run = await make_run()
        result = await make_result(run.id)

        updated = await api_handlers.api_test_result_update_handler(make_request(
            match_info={"result_id": result.id}, body={"tags": ["smoke"]}, app=app,
        ))
        deleted = await api_handlers.api_test_result_delete_handler(make_request(
            match_info={"result_id": result.id}, app=app,
        ))
        again = await api_handlers.api_test_result_delete_handler(make_request(
            match_info={"result_id": result.id}, app=app,
        ))

        assert payload(updated)["data"]["tags"] == ["smoke"]
        assert deleted.status == 200
        assert again.status == 404
        assert app["hub"].test_updated.call_count == 2

    @pytest.mark.asyncio
    async def test_update_result_cannot_reopen_finished_test(self, temp_db, make_run, make_result, app):
        """A finished result keeps its state; only metadata can be patched."""
        run = await make_run()
        result = await make_result(run.id, state="passed", duration=120)

        reopened = await api_handlers.api_test_result_update_handler(make_request(
            match_info={"result_id": result.id}, body={"state": "pending", "duration": 0}, app=app,
        ))
        retried = await api_handlers.api_test_result_update_handler(make_request(
            match_info={"result_id": result.id}, body={"state": "retried"}, app=app,
        ))
        annotated = await api_handlers.api_test_result_update_handler(make_request(
            match_info={"result_id": result.id}, body={"context": "flaky on CI"}, app=app,
        ))

        assert reopened.status == 400
        assert "state" in payload(reopened)["message"]
        assert retried.status == 400
        stored = await temp_db.results.get(result.id)
        assert stored.state == "passed"
        assert stored.duration == 120
        assert stored.context == "flaky on CI"
        assert annotated.status == 200

    @pytest.mark.asyncio
    async def test_flaky_results(self, temp_db, make_run, make_result):
        """Flaky endpoint validates its threshold."""
        response = await api_handlers.api_test_results_flaky_handler(make_request(query={"threshold": "0.2"}))
        invalid = await api_handlers.api_test_results_flaky_handler(make_request(query={"threshold": "2"}))

        assert payload(response)["data"] == []
        assert invalid.status == 400

    @pytest.mark.asyncio
    async def test_result_statistics(self, temp_db, make_run, make_result):
        """Result statistics can be scoped to a run."""
        run = await make_run()
        await make_result(run.id)

        scoped = await api_handlers.api_test_results_statistics_handler(make_request(query={"runId": run.id}))
        missing = await api_handlers.api_test_results_statistics_handler(make_request(query={"runId": "nope"}))

        assert payload(scoped)["data"]["total"] == 1
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_search_by_file_and_unique_values(self, temp_db, make_run, make_result):
        """Search, per-file history and unique values."""
        run = await make_run()
        await make_result(run.id, full_title="cart applies coupon", file="cart.cy.ts")
        await make_result(run.id)

        search = await api_handlers.api_test_results_search_handler(make_request(body={"query": "coupon"}))
        by_file = await api_handlers.api_test_results_by_file_handler(make_request(match_info={"file": "cart.cy.ts"}))
        values = await api_handlers.api_test_results_unique_values_handler(make_request(
            match_info={"field": "files"},
        ))
        bad_field = await api_handlers.api_test_results_unique_values_handler(make_request(
            match_info={"field": "nope"},
        ))

        assert len(payload(search)["data"]) == 1
        assert [r["file"] for r in payload(by_file)["data"]] == ["cart.cy.ts"]
        assert {v["value"] for v in payload(values)["data"]} == {"cart.cy.ts", "cypress/e2e/login.cy.ts"}
        assert bad_field.status == 400


class TestFilterPresetEndpoints:
    """Test the /api/filter-presets endpoints."""

    @pytest.mark.asyncio
    async def test_preset_crud_and_default(self, temp_db):
        """Create, update, set default and delete presets."""
        created = await api_handlers.api_filter_preset_create_handler(make_request(body={
            "name": "Failures", "filters": {"status": ["failed"]}, "isDefault": True,
        }))
        other = await api_handlers.api_filter_preset_create_handler(make_request(body={"name": "Slow"}))
        preset_id = payload(created)["data"]["id"]
        other_id = payload(other)["data"]["id"]

        updated = await api_handlers.api_filter_preset_update_handler(make_request(
            match_info={"preset_id": preset_id}, body={"description": "only failures"},
        ))
        made_default = await api_handlers.api_filter_preset_default_handler(make_request(
            match_info={"preset_id": other_id},
        ))
        listing = await api_handlers.api_filter_presets_handler(make_request())
        deleted = await api_handlers.api_filter_preset_delete_handler(make_request(
            match_info={"preset_id": preset_id},
        ))
        gone = await api_handlers.api_filter_preset_details_handler(make_request(
            match_info={"preset_id": preset_id},
        ))

        assert created.status == 201
        assert payload(updated)["data"]["description"] == "only failures"
        assert payload(made_default)["data"]["isDefault"] is True
        defaults = [p["id"] for p in payload(listing)["data"] if p["isDefault"]]
        assert defaults == [other_id]
        assert deleted.status == 200
        assert gone.status == 404

    @pytest.mark.asyncio
    async def test_create_preset_requires_name(self, temp_db):
        """A preset without a name is rejected."""
        missing = await api_handlers.api_filter_preset_create_handler(make_request(body={"filters": {}}))
        wrong_type = await api_handlers.api_filter_preset_create_handler(make_request(body={
            "name": "x", "filters": ["failed"],
        }))

        assert missing.status == 400
        assert wrong_type.status == 400


class TestAdministrationEndpoints:
    """Test database, config and system endpoints."""

    @pytest.mark.asyncio
    async def test_database_statistics_health_and_maintenance(self, temp_db):
        """Database endpoints report statistics and health."""
        stats = await api_handlers.api_database_statistics_handler(make_request())
        health = await api_handlers.api_database_health_handler(make_request())
        maintenance = await api_handlers.api_database_maintenance_handler(make_request())

        assert payload(stats)["data"]["testRuns"] == 0
        assert health.status == 200
        assert payload(health)["data"]["isConnected"] is True
        assert payload(maintenance)["data"]["analyzed"] is True

    @pytest.mark.asyncio
    async def test_backup_names_are_validated(self, temp_db):
        """Backups are created under the backup directory."""
        created = await api_handlers.api_database_backup_handler(make_request(body={"name": "pre-release_1"}))
        unnamed = await api_handlers.api_database_backup_handler(make_request())
        invalid = await api_handlers.api_database_backup_handler(make_request(body={"name": "../etc"}))

        assert created.status == 201
        assert "pre-release_1-backup-" in payload(created)["data"]["path"]
        assert unnamed.status == 201
        assert invalid.status == 400

    @pytest.mark.asyncio
    async def test_database_cleanup(self, temp_db, make_run, app):
        """Cleanup accepts retentionDays in the body."""
        await make_run(start_time="2026-01-01T00:00:00.000Z")

        response = await api_handlers.api_database_cleanup_handler(make_request(
            body={"retentionDays": 1}, app=app,
        ))
        invalid = await api_handlers.api_database_cleanup_handler(make_request(
            body={"retentionDays": "soon"}, app=app,
        ))

        assert payload(response)["data"]["runs"] == 1
        assert invalid.status == 400

    @pytest.mark.asyncio
    async def test_config_read_and_update(self, temp_db, app):
        """Only theme and realTimeUpdates can be changed."""
        read = await api_handlers.api_config_handler(make_request(app=app))
        updated = await api_handlers.api_config_update_handler(make_request(
            body={"theme": "dark", "realTimeUpdates": False}, app=app,
        ))
        rejected = await api_handlers.api_config_update_handler(make_request(body={"port": 1}, app=app))

        assert payload(read)["data"]["theme"] == "auto"
        assert payload(updated)["data"]["theme"] == "dark"
        assert app["config"]["realtime"]["enabled"] is False
        assert app["hub"].enabled is False
        assert rejected.status == 400

    @pytest.mark.asyncio
    async def test_system_info_and_global_search(self, temp_db, make_run, make_result, app):
        """System info and global search."""
        app["hub"].get_statistics.return_value = {"connectedClients": 0, "rooms": {}, "clients": []}
        run = await make_run(id="search-me")
        await make_result(run.id, full_title="search-me result")

        info = await api_handlers.api_system_info_handler(make_request(app=app))
        search = await api_handlers.api_search_handler(make_request(body={"query": "search-me"}))
        websocket = await api_handlers.api_websocket_info_handler(make_request(app=app))

        assert payload(info)["data"]["version"] == "1.0.0"
        assert payload(info)["data"]["websocket"]["connectedClients"] == 0
        data = payload(search)["data"]
        assert [r["id"] for r in data["runs"]] == ["search-me"]
        assert len(data["results"]) == 1
        assert payload(websocket)["data"]["connectedClients"] == 0

    @pytest.mark.asyncio
    async def test_server_info(self, app):
        """Server info returns identity and config fingerprint."""
        response = await api_handlers.api_server_info_handler(make_request(app=app))
        body = payload(response)

        assert body["service"] == "aurora-server"
        assert body["version"] == "1.0.0"
        assert len(body["config_hash"]) == 64
        assert body["config"]["retention_days"] == 30

    @pytest.mark.asyncio
    async def test_health_handler(self, temp_db):
        """Health check returns ok with a connected database."""
        response = await api_handlers.health_handler(make_request())

        assert response.status == 200
        assert payload(response)["status"] == "ok"

    @pytest.mark.asyncio
    async def test_health_handler_reports_failure(self, monkeypatch):
        """Health check returns 503 when the database fails."""
        broken = MagicMock()
        broken.fetch_value = AsyncMock(side_effect=RuntimeError("database is gone"))
        monkeypatch.setattr(api_handlers.database, "db", broken)

        response = await api_handlers.health_handler(make_request())

        assert response.status == 503
        assert payload(response)["status"] == "error"
