#!/usr/bin/env python3
"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest
import yaml

from aurora_server import config as config_module
from aurora_server.config import (
    DEFAULTS,
    apply_config_update,
    get_config_hash,
    load_config,
    public_config,
    validate_config,
)
from aurora_server.errors import ValidationError


class TestValidateConfig:
    """Test merging with defaults and validation."""

    def test_empty_config_uses_defaults(self, tmp_path):
        config = validate_config(None, config_dir=tmp_path)

        assert config["server"]["port"] == DEFAULTS["server"]["port"]
        assert config["retention"]["days"] == 30
        assert config["data"]["directory"] == (tmp_path / "aurora-reports").resolve()

    def test_values_override_defaults_without_mutating_them(self, tmp_path):
        config = validate_config({"server": {"port": 8080}, "realtime": {"enabled": False}}, config_dir=tmp_path)

        assert config["server"]["port"] == 8080
        assert config["server"]["localhost_only"] is True
        assert config["realtime"]["enabled"] is False
        assert DEFAULTS["server"]["port"] == 4200

    def test_absolute_data_directory_is_kept(self, tmp_path):
        config = validate_config({"data": {"directory": str(tmp_path / "reports")}})

        assert config["data"]["directory"] == tmp_path / "reports"

    def test_retention_can_be_disabled(self):
        assert validate_config({"retention": {"days": None}})["retention"]["days"] is None

    @pytest.mark.parametrize("raw", [
        ["not", "a", "mapping"],
        {"webserver": {}},
        {"server": {"colour": "blue"}},
        {"server": "8080"},
        {"server": {"port": 0}},
        {"server": {"port": "4200"}},
        {"server": {"localhost_only": "yes"}},
        {"retention": {"days": 0}},
        {"realtime": {"recent_runs": 500}},
        {"dashboard": {"theme": "neon"}},
        {"screenshots": {"format": "gif"}},
        {"screenshots": {"quality": 101}},
        {"database": {"filename": ""}},
    ])
    def test_invalid_values_raise(self, raw):
        with pytest.raises(ValidationError):
            validate_config(raw)


class TestLoadConfig:
    """Test locating and reading the YAML file."""

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"server": {"port": 5000}, "data": {"directory": "out"}}))

        config = load_config(path)

        assert config["server"]["port"] == 5000
        assert config["data"]["directory"] == (tmp_path / "out").resolve()
        assert config_module.CONFIG_PATH_USED == path

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("retention:\n  days: 7\n")
        monkeypatch.setenv("AURORA_SERVER_YAML", str(path))

        assert load_config()["retention"]["days"] == 7

    def test_missing_explicit_path_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            load_config(tmp_path / "missing.yaml")

    def test_missing_env_path_exits(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AURORA_SERVER_YAML", str(tmp_path / "missing.yaml"))

        with pytest.raises(SystemExit):
            load_config()

    def test_invalid_yaml_exits(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("server: [unclosed\n")

        with pytest.raises(SystemExit):
            load_config(path)

    def test_invalid_values_exit(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("server:\n  port: 99999\n")

        with pytest.raises(SystemExit):
            load_config(path)

    def test_packaged_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AURORA_SERVER_YAML", raising=False)
        monkeypatch.chdir(tmp_path)

        config = load_config()

        assert config_module.CONFIG_PATH_USED == config_module.DEFAULT_CONFIG_PATH
        assert config["data"]["directory"] == (tmp_path / "aurora-reports").resolve()


class TestDashboardConfig:
    """Test the dashboard view and the limited write."""

    def test_public_config(self, test_config):
        view = public_config(test_config)

        assert view["dashboardPort"] == 4200
        assert view["retentionDays"] == 30
        assert view["realTimeUpdates"] is True
        assert view["theme"] == "auto"
        assert view["screenshots"]["onFailureOnly"] is True
        assert view["database"]["enableWAL"] is True

    def test_apply_update(self, test_config):
        view = apply_config_update(test_config, {"theme": "dark", "realTimeUpdates": False})

        assert view["theme"] == "dark"
        assert view["realTimeUpdates"] is False
        assert test_config["dashboard"]["theme"] == "dark"

    @pytest.mark.parametrize("patch", [
        {},
        {"retentionDays": 5},
        {"theme": "neon"},
        {"realTimeUpdates": "off"},
        ["theme"],
    ])
    def test_rejected_updates(self, test_config, patch):
        with pytest.raises(ValidationError):
            apply_config_update(test_config, patch)

    def test_config_hash_is_stable(self, tmp_path):
        first = validate_config({"data": {"directory": str(tmp_path)}})
        second = validate_config({"data": {"directory": str(tmp_path)}})
        other = validate_config({"data": {"directory": str(tmp_path)}, "server": {"port": 4300}})

        assert get_config_hash(first) == get_config_hash(second)
        assert get_config_hash(first) != get_config_hash(other)
        # Dashboard-only settings do not change the fingerprint.
        apply_config_update(second, {"theme": "dark"})
        assert get_config_hash(first) == get_config_hash(second)

    def test_data_directory_in_fingerprint_is_resolved(self, tmp_path):
        config = validate_config({"data": {"directory": str(tmp_path)}})

        assert config_module.get_config_fingerprint(config)["data_dir"] == str(Path(tmp_path).resolve())
