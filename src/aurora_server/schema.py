"""
Schema definition and migrations for the Aurora telemetry store.

Everything here operates on a raw aiosqlite connection so it can run while
the owning TelemetryDatabase is still initialising.
"""

import logging

from .errors import PersistenceError
from .utils import log_event

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
SCHEMA_VERSION_KEY = "schema_version"

# Fixed-width ISO form, identical to utils.now_utc_iso().
SQL_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

TABLES = {
    "test_runs": f"""
        CREATE TABLE IF NOT EXISTS test_runs (
            id TEXT PRIMARY KEY,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration INTEGER,
            total_tests INTEGER NOT NULL DEFAULT 0,
            passed INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            pending INTEGER NOT NULL DEFAULT 0,
            retries INTEGER NOT NULL DEFAULT 0,
            browser_name TEXT,
            browser_version TEXT,
            runner_version TEXT,
            spec_files TEXT NOT NULL DEFAULT '[]',
            config TEXT NOT NULL DEFAULT '{{}}',
            ci_info TEXT,
            status TEXT NOT NULL DEFAULT 'running'
                CHECK (status IN ('running', 'completed', 'failed', 'cancelled')),
            created_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            updated_at TEXT NOT NULL DEFAULT ({SQL_NOW})
        )
    """,
    "test_results": f"""
        CREATE TABLE IF NOT EXISTS test_results (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            title TEXT NOT NULL,
            full_title TEXT NOT NULL,
            state TEXT NOT NULL
                CHECK (state IN ('passed', 'failed', 'skipped', 'pending', 'retried')),
            duration INTEGER NOT NULL DEFAULT 0,
            error_name TEXT,
            error_message TEXT,
            error_stack TEXT,
            error_diff TEXT,
            screenshot_path TEXT,
            retries INTEGER NOT NULL DEFAULT 0,
            current_retry INTEGER NOT NULL DEFAULT 0,
            pending INTEGER NOT NULL DEFAULT 0,
            file TEXT,
            parent TEXT,
            context TEXT,
            tags TEXT,
            start_time TEXT,
            end_time TEXT,
            browser_name TEXT,
            browser_version TEXT,
            viewport_width INTEGER,
            viewport_height INTEGER,
            created_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            updated_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            FOREIGN KEY (run_id) REFERENCES test_runs (id) ON DELETE CASCADE
        )
    """,
    "screenshots": f"""
        CREATE TABLE IF NOT EXISTS screenshots (
            id TEXT PRIMARY KEY,
            test_result_id TEXT NOT NULL,
            name TEXT NOT NULL,
            path TEXT NOT NULL,
            thumbnail_path TEXT,
            width INTEGER,
            height INTEGER,
            size INTEGER,
            format TEXT,
            taken_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            created_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            FOREIGN KEY (test_result_id) REFERENCES test_results (id) ON DELETE CASCADE
        )
    """,
    "filter_presets": f"""
        CREATE TABLE IF NOT EXISTS filter_presets (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            filters TEXT NOT NULL DEFAULT '{{}}',
            is_default INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            updated_at TEXT NOT NULL DEFAULT ({SQL_NOW})
        )
    """,
    "metadata": f"""
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT,
            created_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
            updated_at TEXT NOT NULL DEFAULT ({SQL_NOW})
        )
    """,
}

INDEXES = {
    "idx_test_runs_start_time": "test_runs (start_time)",
    "idx_test_runs_status": "test_runs (status)",
    "idx_test_runs_browser": "test_runs (browser_name)",
    "idx_test_runs_status_start": "test_runs (status, start_time)",
    "idx_test_results_run_id": "test_results (run_id)",
    "idx_test_results_state": "test_results (state)",
    "idx_test_results_duration": "test_results (duration)",
    "idx_test_results_file": "test_results (file)",
    "idx_test_results_start_time": "test_results (start_time)",
    "idx_test_results_full_title": "test_results (full_title)",
    "idx_test_results_retries": "test_results (retries)",
    "idx_test_results_run_state": "test_results (run_id, state)",
    "idx_test_results_state_duration": "test_results (state, duration)",
    "idx_screenshots_result": "screenshots (test_result_id)",
    "idx_screenshots_taken_at": "screenshots (taken_at)",
    "idx_filter_presets_name": "filter_presets (name)",
    "idx_filter_presets_default": "filter_presets (is_default)",
}


def _touch_trigger(table, key):
    return f"""
        CREATE TRIGGER IF NOT EXISTS trg_{table}_updated_at
        AFTER UPDATE ON {table}
        FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
        BEGIN
            UPDATE {table} SET updated_at = {SQL_NOW} WHERE {key} = NEW.{key};
        END
    """


TRIGGERS = {
    "trg_test_runs_updated_at": _touch_trigger("test_runs", "id"),
    "trg_test_results_updated_at": _touch_trigger("test_results", "id"),
    "trg_filter_presets_updated_at": _touch_trigger("filter_presets", "id"),
    "trg_metadata_updated_at": _touch_trigger("metadata", "key"),
    # Covers connections opened without PRAGMA foreign_keys.
    "trg_test_results_delete_screenshots": """
        CREATE TRIGGER IF NOT EXISTS trg_test_results_delete_screenshots
        AFTER DELETE ON test_results
        FOR EACH ROW
        BEGIN
            DELETE FROM screenshots WHERE test_result_id = OLD.id;
        END
    """,
    "trg_filter_presets_single_default": """
        CREATE TRIGGER IF NOT EXISTS trg_filter_presets_single_default
        AFTER UPDATE OF is_default ON filter_presets
        FOR EACH ROW WHEN NEW.is_default = 1
        BEGIN
            UPDATE filter_presets SET is_default = 0 WHERE id != NEW.id AND is_default = 1;
        END
    """,
}

# Added by migration 2; also part of a fresh schema.
INSERT_DEFAULT_TRIGGER = """
    CREATE TRIGGER IF NOT EXISTS trg_filter_presets_single_default_insert
    AFTER INSERT ON filter_presets
    FOR EACH ROW WHEN NEW.is_default = 1
    BEGIN
        UPDATE filter_presets SET is_default = 0 WHERE id != NEW.id AND is_default = 1;
    END
"""


async def _migrate_v1(conn):
    """Baseline schema; tables are created by create_schema()."""


async def _migrate_v2(conn):
    """Collapse duplicate default presets and guard inserts."""
    cursor = await conn.execute(
        "SELECT id FROM filter_presets WHERE is_default = 1 ORDER BY updated_at DESC, id DESC"
    )
    rows = await cursor.fetchall()
    for (preset_id,) in rows[1:]:
        await conn.execute("UPDATE filter_presets SET is_default = 0 WHERE id = ?", (preset_id,))
    await conn.execute(INSERT_DEFAULT_TRIGGER)


MIGRATIONS = [
    (1, _migrate_v1),
    (2, _migrate_v2),
]


class SchemaManager:
    """Creates, migrates and inspects the relational schema."""

    async def create_schema(self, conn):
        """Create tables, indexes and triggers. Safe to run on every startup."""
        for ddl in TABLES.values():
            await conn.execute(ddl)
        for name, target in INDEXES.items():
            await conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {target}")
        for ddl in TRIGGERS.values():
            await conn.execute(ddl)
        await conn.execute(INSERT_DEFAULT_TRIGGER)

    async def get_version(self, conn):
        cursor = await conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (SCHEMA_VERSION_KEY,)
        )
        row = await cursor.fetchone()
        if row is None or row[0] is None:
            return 0
        try:
            return int(row[0])
        except ValueError:
            raise PersistenceError(f"Corrupt schema version: {row[0]!r}")

    async def set_version(self, conn, version):
        await conn.execute(
            """
            INSERT INTO metadata (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (SCHEMA_VERSION_KEY, str(version)),
        )

    async def migrate(self, conn, target=SCHEMA_VERSION):
        """Apply ordered migration steps from the stored version up to target.

        Returns the list of applied versions.
        """
        current = await self.get_version(conn)
        if current > target:
            raise PersistenceError(
                f"Database schema version {current} is newer than supported version {target}"
            )

        applied = []
        for version, step in MIGRATIONS:
            if version <= current or version > target:
                continue
            logger.info(f"Applying schema migration {version}")
            await conn.execute("BEGIN IMMEDIATE")
            try:
                await step(conn)
                await self.set_version(conn, version)
            except Exception:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
            applied.append(version)

        if applied:
            log_event("schema_migrated", from_version=current, to_version=applied[-1])
        return applied

    async def get_schema_info(self, conn):
        """Return the tables, indexes, triggers and stored schema version."""
        cursor = await conn.execute(
            "SELECT type, name FROM sqlite_master WHERE name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        rows = await cursor.fetchall()
        info = {"tables": [], "indexes": [], "triggers": []}
        for kind, name in rows:
            if kind == "table":
                info["tables"].append(name)
            elif kind == "index":
                info["indexes"].append(name)
            elif kind == "trigger":
                info["triggers"].append(name)
        info["version"] = await self.get_version(conn)
        return info

    async def drop_all(self, conn):
        """Drop every table (and with them their indexes and triggers)."""
        await conn.execute("PRAGMA foreign_keys = OFF")
        try:
            for table in ("screenshots", "test_results", "test_runs", "filter_presets", "metadata"):
                await conn.execute(f"DROP TABLE IF EXISTS {table}")
        finally:
            await conn.execute("PRAGMA foreign_keys = ON")
