"""
Configuration loading and management for Aurora server.
"""

import copy
import hashlib
import json
import logging
import os
import sys
from pathlib import Path

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = BASE_DIR / "aurora_server.yaml"
CONFIG_ENV_VAR = "AURORA_SERVER_YAML"

# Set by load_config().
CONFIG_PATH_USED = None

THEMES = ("light", "dark", "auto")
SCREENSHOT_FORMATS = ("png", "jpeg")

DEFAULTS = {
    "server": {
        "port": 4200,
        "localhost_only": True,
        "shutdown_timeout": 5,
    },
    "data": {
        "directory": "./aurora-reports",
    },
    "database": {
        "filename": "aurora.db",
        "enable_wal": True,
        "busy_timeout_ms": 10000,
        "backup_interval_hours": 24,
        "backup_dir": "backups",
        "backups_to_keep": 10,
    },
    "retention": {
        "days": 30,
        "cleanup_interval_hours": 1,
    },
    "realtime": {
        "enabled": True,
        "heartbeat_seconds": 30,
        "recent_runs": 5,
        "queue_size": 1000,
    },
    "dashboard": {
        "theme": "auto",
    },
    "screenshots": {
        "enabled": True,
        "quality": 90,
        "format": "png",
        "on_failure_only": True,
        "compress": True,
    },
}


def _require_bool(section, key, value):
    if not isinstance(value, bool):
        raise ValidationError(f"{section}.{key} must be a boolean, got: {type(value).__name__}")
    return value


def _require_int(section, key, value, minimum=None, maximum=None):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError(f"{section}.{key} must be an integer, got: {value!r}")
    value = int(value)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{section}.{key} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{section}.{key} must be <= {maximum}, got: {value}")
    return value


def _require_number(section, key, value, minimum):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{section}.{key} must be a number, got: {value!r}")
    if value <= minimum:
        raise ValidationError(f"{section}.{key} must be > {minimum}, got: {value}")
    return value


def validate_config(raw, config_dir=None):
    """Merge raw YAML data with defaults and validate every value.

    Returns a new nested dict. Raises ValidationError on the first problem.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("Configuration root must be a mapping")

    unknown = set(raw) - set(DEFAULTS)
    if unknown:
        raise ValidationError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    config = copy.deepcopy(DEFAULTS)
    for section, values in raw.items():
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValidationError(f"Section '{section}' must be a mapping")
        for key, value in values.items():
            if key not in config[section]:
                raise ValidationError(f"Unknown configuration key: {section}.{key}")
            config[section][key] = value

    server = config["server"]
    _require_int("server", "port", server["port"], 1, 65535)
    _require_bool("server", "localhost_only", server["localhost_only"])
    _require_number("server", "shutdown_timeout", server["shutdown_timeout"], 0)

    data_dir = config["data"]["directory"]
    if not isinstance(data_dir, (str, Path)) or not str(data_dir):
        raise ValidationError("data.directory must be a non-empty path")
    data_path = Path(data_dir)
    if not data_path.is_absolute():
        data_path = ((config_dir or Path.cwd()) / data_path).resolve()
    config["data"]["directory"] = data_path

    database = config["database"]
    if not isinstance(database["filename"], str) or not database["filename"]:
        raise ValidationError("database.filename must be a non-empty string")
    _require_bool("database", "enable_wal", database["enable_wal"])
    _require_int("database", "busy_timeout_ms", database["busy_timeout_ms"], 0)
    _require_number("database", "backup_interval_hours", database["backup_interval_hours"], 0)
    if not isinstance(database["backup_dir"], str) or not database["backup_dir"]:
        raise ValidationError("database.backup_dir must be a non-empty string")
    _require_int("database", "backups_to_keep", database["backups_to_keep"], 1)

    retention = config["retention"]
    if retention["days"] is not None:
        _require_int("retention", "days", retention["days"], 1)
    _require_number("retention", "cleanup_interval_hours", retention["cleanup_interval_hours"], 0)

    realtime = config["realtime"]
    _require_bool("realtime", "enabled", realtime["enabled"])
    _require_number("realtime", "heartbeat_seconds", realtime["heartbeat_seconds"], 0)
    _require_int("realtime", "recent_runs", realtime["recent_runs"], 1, 100)
    _require_int("realtime", "queue_size", realtime["queue_size"], 1)

    if config["dashboard"]["theme"] not in THEMES:
        raise ValidationError(f"dashboard.theme must be one of: {', '.join(THEMES)}")

    screenshots = config["screenshots"]
    _require_bool("screenshots", "enabled", screenshots["enabled"])
    _require_int("screenshots", "quality", screenshots["quality"], 0, 100)
    if screenshots["format"] not in SCREENSHOT_FORMATS:
        raise ValidationError(f"screenshots.format must be one of: {', '.join(SCREENSHOT_FORMATS)}")
    _require_bool("screenshots", "on_failure_only", screenshots["on_failure_only"])
    _require_bool("screenshots", "compress", screenshots["compress"])

    return config


def load_config(config_path=None):
    """Load server configuration from YAML file"""
    global CONFIG_PATH_USED
    env_override_used = False
    explicit_path_used = False

    if config_path is None:
        # Allow override via environment variable for tests and custom setups
        env_path = os.getenv(CONFIG_ENV_VAR)
        cwd_default = (Path.cwd() / "aurora_server.yaml").resolve()
        if env_path:
            env_override_used = True
            config_path = Path(env_path)
        elif cwd_default.exists():
            config_path = cwd_default
        else:
            config_path = DEFAULT_CONFIG_PATH
    else:
        explicit_path_used = True
        config_path = Path(config_path)

    if not config_path.is_absolute():
        config_path = (Path.cwd() / config_path).resolve()
    # For the packaged default config, resolve relative paths against the working directory.
    config_dir = Path.cwd() if config_path == DEFAULT_CONFIG_PATH else config_path.parent

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        config = validate_config(raw, config_dir=config_dir)
        CONFIG_PATH_USED = config_path
        return config
    except FileNotFoundError:
        # If the user explicitly requested a config (via env var or arg) we must fail hard.
        if env_override_used or explicit_path_used:
            logger.error(f"Configuration file '{config_path}' not found.")
            sys.exit(1)
        logger.warning(f"Configuration file '{config_path}' not found. Using defaults.")
        CONFIG_PATH_USED = None
        return validate_config({})
    except yaml.YAMLError as e:
        logger.error(f"Error parsing configuration file: {e}")
        sys.exit(1)
    except ValidationError as e:
        logger.error(f"Invalid configuration in '{config_path}': {e.message}")
        sys.exit(1)


# --- Dashboard view of the configuration ---

def public_config(config: dict) -> dict:
    """Return the configuration subset exposed by GET /api/config."""
    return {
        "outputDir": str(config["data"]["directory"]),
        "dashboardPort": config["server"]["port"],
        "retentionDays": config["retention"]["days"],
        "realTimeUpdates": config["realtime"]["enabled"],
        "theme": config["dashboard"]["theme"],
        "screenshots": {
            "enabled": config["screenshots"]["enabled"],
            "quality": config["screenshots"]["quality"],
            "format": config["screenshots"]["format"],
            "onFailureOnly": config["screenshots"]["on_failure_only"],
            "compress": config["screenshots"]["compress"],
        },
        "database": {
            "path": config["database"]["filename"],
            "enableWAL": config["database"]["enable_wal"],
            "backupInterval": config["database"]["backup_interval_hours"],
        },
    }


WRITABLE_KEYS = ("theme", "realTimeUpdates")


def apply_config_update(config: dict, patch) -> dict:
    """Apply the limited dashboard write (theme, realTimeUpdates) in place."""
    if not isinstance(patch, dict) or not patch:
        raise ValidationError("Configuration update must be a non-empty object")
    rejected = [key for key in patch if key not in WRITABLE_KEYS]
    if rejected:
        raise ValidationError(
            f"Only {', '.join(WRITABLE_KEYS)} can be updated, got: {', '.join(sorted(rejected))}"
        )
    if "theme" in patch:
        if patch["theme"] not in THEMES:
            raise ValidationError(f"theme must be one of: {', '.join(THEMES)}")
        config["dashboard"]["theme"] = patch["theme"]
    if "realTimeUpdates" in patch:
        config["realtime"]["enabled"] = _require_bool("realtime", "enabled", patch["realTimeUpdates"])
    return public_config(config)


# --- Server identity / config fingerprint ---

def get_config_fingerprint(config: dict) -> dict:
    """Return a stable, JSON-serializable representation of config for hashing/comparison."""
    return {
        "port": int(config["server"]["port"]),
        "localhost_only": bool(config["server"]["localhost_only"]),
        "data_dir": str(Path(config["data"]["directory"]).resolve()),
        "database": config["database"]["filename"],
        "enable_wal": bool(config["database"]["enable_wal"]),
        "retention_days": config["retention"]["days"],
    }


def get_config_hash(config: dict) -> str:
    """Compute a hash of the config for comparing configurations."""
    payload = json.dumps(get_config_fingerprint(config), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
