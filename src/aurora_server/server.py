"""
Application wiring and entry point for Aurora server.
"""

import argparse
import json
import logging
import sys
import urllib.error
import urllib.request

from aiohttp import web

from . import api_handlers as api
from . import config as config_module
from . import database
from .hub import RealtimeHub
from .ingestion import IngestionGateway
from .maintenance import MaintenanceScheduler
from .utils import log_event
from .websocket import RealtimeEndpoint, RunnerEndpoint

logger = logging.getLogger(__name__)


def build_routes(endpoint: RealtimeEndpoint, runner: RunnerEndpoint):
    # Fixed paths are registered before their {id} siblings.
    return [
        web.get("/health", api.health_handler),
        web.get("/ws", endpoint.handle_ws),
        web.get("/ws/runner", runner.handle_ws),

        # Test runs
        web.get("/api/test-runs", api.api_test_runs_handler),
        web.get("/api/test-runs/statistics/overview", api.api_test_runs_overview_handler),
        web.get("/api/test-runs/statistics/trends", api.api_test_runs_trends_handler),
        web.post("/api/test-runs/search", api.api_test_runs_search_handler),
        web.delete("/api/test-runs/cleanup", api.api_test_runs_cleanup_handler),
        web.get("/api/test-runs/{run_id}", api.api_test_run_details_handler),
        web.put("/api/test-runs/{run_id}", api.api_test_run_update_handler),
        web.delete("/api/test-runs/{run_id}", api.api_test_run_delete_handler),
        web.get("/api/test-runs/{run_id}/statistics", api.api_test_run_statistics_handler),

        # Test results
        web.get("/api/test-results", api.api_test_results_handler),
        web.get("/api/test-results/flaky", api.api_test_results_flaky_handler),
        web.get("/api/test-results/statistics", api.api_test_results_statistics_handler),
        web.post("/api/test-results/search", api.api_test_results_search_handler),
        web.get("/api/test-results/by-file/{file:.+}", api.api_test_results_by_file_handler),
        web.get("/api/test-results/unique-values/{field}", api.api_test_results_unique_values_handler),
        web.get("/api/test-results/{result_id}", api.api_test_result_details_handler),
        web.put("/api/test-results/{result_id}", api.api_test_result_update_handler),
        web.delete("/api/test-results/{result_id}", api.api_test_result_delete_handler),

        # Filter presets
        web.get("/api/filter-presets", api.api_filter_presets_handler),
        web.post("/api/filter-presets", api.api_filter_preset_create_handler),
        web.get("/api/filter-presets/{preset_id}", api.api_filter_preset_details_handler),
        web.put("/api/filter-presets/{preset_id}", api.api_filter_preset_update_handler),
        web.delete("/api/filter-presets/{preset_id}", api.api_filter_preset_delete_handler),
        web.post("/api/filter-presets/{preset_id}/default", api.api_filter_preset_default_handler),

        # Database administration
        web.get("/api/database/statistics", api.api_database_statistics_handler),
        web.get("/api/database/health", api.api_database_health_handler),
        web.post("/api/database/backup", api.api_database_backup_handler),
        web.post("/api/database/cleanup", api.api_database_cleanup_handler),
        web.post("/api/database/maintenance", api.api_database_maintenance_handler),

        # Configuration and system
        web.get("/api/config", api.api_config_handler),
        web.put("/api/config", api.api_config_update_handler),
        web.get("/api/system/info", api.api_system_info_handler),
        web.post("/api/search", api.api_search_handler),
        web.get("/api/websocket/info", api.api_websocket_info_handler),
        web.get("/api/server-info", api.api_server_info_handler),
    ]


def create_app(config=None) -> web.Application:
    """Build the aiohttp application around one database, hub and gateway."""
    if config is None:
        config = config_module.load_config()

    db = database.initialize_from_config(config)
    realtime = config["realtime"]
    hub = RealtimeHub(
        database=db,
        queue_size=realtime["queue_size"],
        recent_runs=realtime["recent_runs"],
        enabled=realtime["enabled"],
    )
    endpoint = RealtimeEndpoint(hub, db, heartbeat=realtime["heartbeat_seconds"])
    scheduler = MaintenanceScheduler(db, config)
    gateway = IngestionGateway(db, hub=hub, config=config, scheduler=scheduler)
    runner = RunnerEndpoint(gateway, heartbeat=realtime["heartbeat_seconds"])

    app = web.Application()
    app["config"] = config
    app["database"] = db
    app["hub"] = hub
    app["endpoint"] = endpoint
    app["scheduler"] = scheduler
    app["gateway"] = gateway
    app["runner"] = runner
    app.add_routes(build_routes(endpoint, runner))

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    app.on_cleanup.append(on_cleanup)
    return app


async def on_startup(app):
    # Schema creation and migrations run inside initialize().
    await app["database"].initialize()
    app["scheduler"].start()
    log_event("server_started", realtime=app["hub"].enabled,
              retention_days=app["config"]["retention"]["days"])


async def on_shutdown(app):
    await app["hub"].disconnect_all(app["config"]["server"]["shutdown_timeout"])


async def on_cleanup(app):
    await app["scheduler"].stop()
    await database.close_database()
    log_event("server_stopped")


def _get_running_server_info(port: int):
    """Return server-info JSON if an Aurora server is running on localhost:port, else None.

    Raises RuntimeError if something is listening on the port but is not an Aurora server.
    """
    url = f"http://127.0.0.1:{port}/api/server-info"
    req = urllib.request.Request(url, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=1.5) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
            try:
                info = json.loads(raw)
            except ValueError:
                raise RuntimeError(f"Port {port} is in use but /api/server-info did not return JSON.")
            if not isinstance(info, dict) or info.get("service") != "aurora-server":
                raise RuntimeError(f"Port {port} is in use but is not an Aurora server.")
            return info
    except urllib.error.HTTPError as e:
        raise RuntimeError(f"Port {port} is in use but /api/server-info returned HTTP {e.code}.")
    except urllib.error.URLError:
        # Nothing listening.
        return None


def main(argv=None):
    parser = argparse.ArgumentParser(prog="aurora-server")
    parser.add_argument("--config", help="Path to aurora_server.yaml")
    parser.add_argument("--host", help="Bind address (defaults from server.localhost_only)")
    parser.add_argument("--port", type=int, help="Port to listen on (overrides server.port)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = config_module.load_config(args.config)
    if args.port is not None:
        if not 1 <= args.port <= 65535:
            print(f"ERROR: port must be between 1 and 65535, got {args.port}")
            return 2
        config["server"]["port"] = args.port
    port = config["server"]["port"]
    host = args.host or ("127.0.0.1" if config["server"]["localhost_only"] else "0.0.0.0")

    try:
        running = _get_running_server_info(port)
    except RuntimeError as e:
        print(f"ERROR: {e}")
        return 2
    if running is not None:
        if running.get("config_hash") == config_module.get_config_hash(config):
            print(f"Aurora server already running on 127.0.0.1:{port} with identical config. Exiting.")
            return 0
        print(f"ERROR: Aurora server already running on 127.0.0.1:{port} but config differs.")
        print(f"  running config_path: {running.get('config_path')}")
        return 2

    print(f"Starting server on {host}:{port}")
    print(f"Data directory: {config['data']['directory']}")
    print(f"Retention days: {config['retention']['days']}")
    print(f"Real-time updates: {config['realtime']['enabled']}")

    web.run_app(create_app(config), host=host, port=port,
                shutdown_timeout=config["server"]["shutdown_timeout"])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
