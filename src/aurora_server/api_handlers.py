"""
API handlers for Aurora server.

All /api/* endpoints for querying, patching and maintaining telemetry.
"""

import logging
import platform
import time

from aiohttp import web

from . import __version__, config as config_module, database
from .analytics import (
    DEFAULT_FLAKY_THRESHOLD,
    find_flaky_tests,
    get_overview_statistics,
    get_run_statistics,
    get_trends,
)
from .errors import AuroraError, ValidationError
from .models import FilterPreset, FilterPresetPatch, TestResultPatch, TestRunPatch
from .query import (
    parse_float,
    parse_int,
    parse_pagination,
    parse_result_filter,
    parse_run_filter,
    parse_sort,
    unique_values,
)
from .utils import now_utc_iso

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


def _ok(data, status=200, **extra):
    return web.json_response({"success": True, "data": data, **extra}, status=status)


def _failure(error, handler):
    """Structured failure payload for any exception raised by a handler."""
    if isinstance(error, AuroraError):
        if error.status >= 500:
            logger.error(f"Error in {handler}: {error.message}")
        return web.json_response(error.to_payload(), status=error.status)
    logger.error(f"Error in {handler}: {error}")
    return web.json_response({
        "success": False,
        "error": "internal_error",
        "message": str(error),
    }, status=500)


async def _read_json(request, required=True):
    if not request.can_read_body:
        if required:
            raise ValidationError("Request body is required")
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _search_text(body):
    text = body.get("query")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Search query is required")
    return text.strip()


def _search_limit(body, default=50):
    limit = body.get("limit", default)
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= 1000:
        raise ValidationError("limit must be an integer between 1 and 1000")
    return limit


def _hub(request):
    return request.app.get("hub")


# --- Test runs ---

async def api_test_runs_handler(request):
    """Get test runs with filtering capabilities."""
    try:
        criteria = parse_run_filter(request.query)
        limit, offset = parse_pagination(request.query)
        page = await database.db.runs.find_all(criteria, limit, offset)
        return _ok(page.serialize(), pagination=page.pagination())
    except Exception as e:
        return _failure(e, "api_test_runs_handler")


async def api_test_run_details_handler(request):
    """Get a single run together with its results."""
    try:
        run_id = request.match_info["run_id"]
        run = await database.db.runs.get(run_id)
        results = await database.db.results.find_by_run_id(run_id)
        data = run.to_dict()
        data["results"] = [result.to_dict() for result in results]
        return _ok(data)
    except Exception as e:
        return _failure(e, "api_test_run_details_handler")


async def api_test_run_update_handler(request):
    """Patch the descriptive fields of a run. Status and aggregates belong to run-end."""
    try:
        run_id = request.match_info["run_id"]
        patch = TestRunPatch.metadata_from_dict(await _read_json(request))
        run = await database.db.runs.update(run_id, patch)
        return _ok(run.to_dict())
    except Exception as e:
        return _failure(e, "api_test_run_update_handler")


async def api_test_run_delete_handler(request):
    """Delete a run and, by cascade, its results and screenshots."""
    try:
        run_id = request.match_info["run_id"]
        await database.db.runs.delete(run_id)
        hub = _hub(request)
        if hub is not None:
            hub.run_deleted(run_id)
        return _ok({"id": run_id, "deleted": True})
    except Exception as e:
        return _failure(e, "api_test_run_delete_handler")


async def api_test_run_statistics_handler(request):
    """Statistics of one run."""
    try:
        return _ok(await get_run_statistics(database.db, request.match_info["run_id"]))
    except Exception as e:
        return _failure(e, "api_test_run_statistics_handler")


async def api_test_runs_overview_handler(request):
    """Global run and result statistics."""
    try:
        return _ok(await get_overview_statistics(database.db))
    except Exception as e:
        return _failure(e, "api_test_runs_overview_handler")


async def api_test_runs_trends_handler(request):
    """Per-day trend over the last N days."""
    try:
        days = parse_int(request.query, "days", 30, minimum=1, maximum=365)
        return _ok(await get_trends(database.db, days))
    except Exception as e:
        return _failure(e, "api_test_runs_trends_handler")


async def api_test_runs_search_handler(request):
    """Free-text search over runs."""
    try:
        body = await _read_json(request)
        runs = await database.db.runs.search(_search_text(body), _search_limit(body))
        return _ok([run.to_dict() for run in runs])
    except Exception as e:
        return _failure(e, "api_test_runs_search_handler")


async def api_test_runs_cleanup_handler(request):
    """Delete runs older than retentionDays (defaults to the configured retention)."""
    try:
        default_days = request.app["config"]["retention"]["days"]
        days = parse_int(request.query, "retentionDays", default_days, minimum=1)
        if days is None:
            raise ValidationError("retentionDays is required when retention is disabled")
        return _ok(await database.db.cleanup_old_data(days))
    except Exception as e:
        return _failure(e, "api_test_runs_cleanup_handler")


# --- Test results ---

async def api_test_results_handler(request):
    """Get test results with filtering, sorting and pagination."""
    try:
        criteria = parse_result_filter(request.query)
        sort = parse_sort(request.query)
        limit, offset = parse_pagination(request.query)
        page = await database.db.results.find_with_filters(criteria, sort, limit, offset)
        return _ok(page.serialize(), pagination=page.pagination())
    except Exception as e:
        return _failure(e, "api_test_results_handler")


async def api_test_result_details_handler(request):
    """Get a single result together with its screenshots."""
    try:
        result = await database.db.results.get(request.match_info["result_id"])
        screenshots = await database.db.screenshots.find_by_result(result.id)
        data = result.to_dict()
        data["screenshots"] = [shot.to_dict() for shot in screenshots]
        return _ok(data)
    except Exception as e:
        return _failure(e, "api_test_result_details_handler")


async def api_test_result_update_handler(request):
    """Patch the mutable metadata of a result."""
    try:
        result_id = request.match_info["result_id"]
        patch = TestResultPatch.metadata_from_dict(await _read_json(request))
        result = await database.db.results.update(result_id, patch)
        hub = _hub(request)
        if hub is not None:
            hub.test_updated(result)
        return _ok(result.to_dict())
    except Exception as e:
        return _failure(e, "api_test_result_update_handler")


async def api_test_result_delete_handler(request):
    """Delete a result and its screenshots."""
    try:
        result = await database.db.results.get(request.match_info["result_id"])
        await database.db.results.delete(result.id)
        hub = _hub(request)
        if hub is not None:
            hub.test_updated(result, "deleted")
        return _ok({"id": result.id, "deleted": True})
    except Exception as e:
        return _failure(e, "api_test_result_delete_handler")


async def api_test_results_flaky_handler(request):
    """Tests whose failure ratio over the last 30 days lies in [threshold, 1)."""
    try:
        threshold = parse_float(request.query, "threshold", DEFAULT_FLAKY_THRESHOLD, minimum=0, maximum=1)
        limit = parse_int(request.query, "limit", 50, minimum=1, maximum=1000)
        flaky = await find_flaky_tests(database.db, threshold=threshold, limit=limit)
        return _ok([test.to_dict() for test in flaky])
    except Exception as e:
        return _failure(e, "api_test_results_flaky_handler")


async def api_test_results_statistics_handler(request):
    """Result statistics, optionally for one run."""
    try:
        run_id = request.query.get("runId") or None
        if run_id:
            await database.db.runs.get(run_id)
        return _ok(await database.db.results.get_statistics(run_id))
    except Exception as e:
        return _failure(e, "api_test_results_statistics_handler")


async def api_test_results_search_handler(request):
    """Free-text search over results."""
    try:
        body = await _read_json(request)
        results = await database.db.results.search(_search_text(body), _search_limit(body))
        return _ok([result.to_dict() for result in results])
    except Exception as e:
        return _failure(e, "api_test_results_search_handler")


async def api_test_results_by_file_handler(request):
    """Most recent results of one spec file."""
    try:
        limit = parse_int(request.query, "limit", 50, minimum=1, maximum=1000)
        results = await database.db.results.find_by_file(request.match_info["file"], limit)
        return _ok([result.to_dict() for result in results])
    except Exception as e:
        return _failure(e, "api_test_results_by_file_handler")


async def api_test_results_unique_values_handler(request):
    """Distinct values and counts for files, browsers or states."""
    try:
        limit = parse_int(request.query, "limit", 100, minimum=1, maximum=1000)
        return _ok(await unique_values(database.db, request.match_info["field"], limit))
    except Exception as e:
        return _failure(e, "api_test_results_unique_values_handler")


# --- Filter presets ---

async def api_filter_presets_handler(request):
    try:
        presets = await database.db.presets.find_all()
        return _ok([preset.to_dict() for preset in presets])
    except Exception as e:
        return _failure(e, "api_filter_presets_handler")


async def api_filter_preset_create_handler(request):
    try:
        body = await _read_json(request)
        # Validates field types before anything is stored.
        FilterPresetPatch.from_dict(body).changes()
        if not isinstance(body.get("name"), str):
            raise ValidationError("name must be a non-empty string")
        preset = await database.db.presets.create(FilterPreset(
            id=None,
            name=body["name"].strip(),
            description=body.get("description"),
            filters=body.get("filters") or {},
            is_default=bool(body.get("isDefault", False)),
        ))
        return _ok(preset.to_dict(), status=201)
    except Exception as e:
        return _failure(e, "api_filter_preset_create_handler")


async def api_filter_preset_details_handler(request):
    try:
        preset = await database.db.presets.get(request.match_info["preset_id"])
        return _ok(preset.to_dict())
    except Exception as e:
        return _failure(e, "api_filter_preset_details_handler")


async def api_filter_preset_update_handler(request):
    try:
        patch = FilterPresetPatch.from_dict(await _read_json(request))
        preset = await database.db.presets.update(request.match_info["preset_id"], patch)
        return _ok(preset.to_dict())
    except Exception as e:
        return _failure(e, "api_filter_preset_update_handler")


async def api_filter_preset_delete_handler(request):
    try:
        preset_id = request.match_info["preset_id"]
        await database.db.presets.delete(preset_id)
        return _ok({"id": preset_id, "deleted": True})
    except Exception as e:
        return _failure(e, "api_filter_preset_delete_handler")


async def api_filter_preset_default_handler(request):
    """Make one preset the single default."""
    try:
        preset = await database.db.presets.set_default(request.match_info["preset_id"])
        return _ok(preset.to_dict())
    except Exception as e:
        return _failure(e, "api_filter_preset_default_handler")


# --- Database administration ---

async def api_database_statistics_handler(request):
    try:
        return _ok(await database.db.get_statistics())
    except Exception as e:
        return _failure(e, "api_database_statistics_handler")


async def api_database_health_handler(request):
    try:
        health = await database.db.health_check()
        return _ok(health, status=200 if health["isConnected"] else 503)
    except Exception as e:
        return _failure(e, "api_database_health_handler")


async def api_database_backup_handler(request):
    try:
        body = await _read_json(request, required=False)
        name = body.get("name")
        if name is not None and (not isinstance(name, str) or not name.replace("-", "").replace("_", "").isalnum()):
            raise ValidationError("name may only contain letters, digits, '-' and '_'")
        path = await database.db.create_backup(name)
        return _ok({"path": str(path)}, status=201)
    except Exception as e:
        return _failure(e, "api_database_backup_handler")


async def api_database_cleanup_handler(request):
    try:
        body = await _read_json(request, required=False)
        days = body.get("retentionDays", request.app["config"]["retention"]["days"])
        if days is None:
            raise ValidationError("retentionDays is required when retention is disabled")
        return _ok(await database.db.cleanup_old_data(days))
    except Exception as e:
        return _failure(e, "api_database_cleanup_handler")


async def api_database_maintenance_handler(request):
    try:
        return _ok(await database.db.run_maintenance())
    except Exception as e:
        return _failure(e, "api_database_maintenance_handler")


# --- Configuration ---

async def api_config_handler(request):
    try:
        return _ok(config_module.public_config(request.app["config"]))
    except Exception as e:
        return _failure(e, "api_config_handler")


async def api_config_update_handler(request):
    """Limited configuration write: theme and realTimeUpdates only."""
    try:
        config = request.app["config"]
        updated = config_module.apply_config_update(config, await _read_json(request))
        hub = _hub(request)
        if hub is not None:
            hub.enabled = config["realtime"]["enabled"]
        logger.info(f"Configuration updated: theme={updated['theme']}, realTimeUpdates={updated['realTimeUpdates']}")
        return _ok(updated)
    except Exception as e:
        return _failure(e, "api_config_update_handler")


# --- System ---

async def api_system_info_handler(request):
    try:
        hub = _hub(request)
        return _ok({
            "version": __version__,
            "python": platform.python_version(),
            "platform": platform.platform(),
            "uptime": round(time.monotonic() - STARTED_AT, 1),
            "timestamp": now_utc_iso(),
            "database": await database.db.get_statistics(),
            "websocket": hub.get_statistics() if hub is not None else None,
        })
    except Exception as e:
        return _failure(e, "api_system_info_handler")


async def api_search_handler(request):
    """Search runs and results at once."""
    try:
        body = await _read_json(request)
        text = _search_text(body)
        limit = _search_limit(body, default=20)
        runs = await database.db.runs.search(text, limit)
        results = await database.db.results.search(text, limit)
        return _ok({
            "runs": [run.to_dict() for run in runs],
            "results": [result.to_dict() for result in results],
        })
    except Exception as e:
        return _failure(e, "api_search_handler")


async def api_websocket_info_handler(request):
    try:
        hub = _hub(request)
        if hub is None:
            return _ok({"enabled": False, "connectedClients": 0, "rooms": {}, "clients": []})
        return _ok(hub.get_statistics())
    except Exception as e:
        return _failure(e, "api_websocket_info_handler")


async def api_server_info_handler(request):
    """Returns server identity and config fingerprint."""
    config = request.app["config"]
    return web.json_response({
        "service": "aurora-server",
        "version": __version__,
        "config_path": str(config_module.CONFIG_PATH_USED) if config_module.CONFIG_PATH_USED else None,
        "config": config_module.get_config_fingerprint(config),
        "config_hash": config_module.get_config_hash(config),
    })


async def health_handler(request):
    """Health check endpoint."""
    try:
        await database.db.fetch_value("SELECT 1")
        return web.json_response({"status": "ok", "timestamp": now_utc_iso()})
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return web.json_response({"status": "error", "message": str(e)}, status=503)
