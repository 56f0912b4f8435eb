"""Tests for RelayConfig configuration management."""

import json

from geopresence.utils.config import (
    DEFAULT_CONFIG,
    DEFAULT_PORT,
    RelayConfig,
    port_from_env,
)


class TestRelayConfigDefaults:
    """Tests for default configuration values."""

    def test_defaults_loaded(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        d = config.to_dict()
        for key, value in DEFAULT_CONFIG.items():
            assert d[key] == value

    def test_default_port(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("http_port") == DEFAULT_PORT == 3001

    def test_room_scoped_by_default(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("room_scoped") is True
        assert config.get("validate_payloads") is True


class TestRelayConfigPersistence:
    """Tests for loading and saving settings."""

    def test_save_and_load(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        config.set("http_port", 9999)
        config.save()

        config2 = RelayConfig(config_path=tmp_config, environ={})
        assert config2.get("http_port") == 9999

    def test_save_creates_parent_dir(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "settings.json"
        config = RelayConfig(config_path=path, environ={})
        config.save()
        assert path.exists()

    def test_load_partial_config(self, tmp_config):
        with open(tmp_config, "w") as f:
            json.dump({"room_scoped": False}, f)

        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("room_scoped") is False
        assert config.get("http_port") == DEFAULT_PORT

    def test_load_invalid_json(self, tmp_config):
        with open(tmp_config, "w") as f:
            f.write("not json {{{")

        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("http_port") == DEFAULT_PORT

    def test_load_non_object_json(self, tmp_config):
        with open(tmp_config, "w") as f:
            json.dump([1, 2, 3], f)

        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("http_port") == DEFAULT_PORT

    def test_ignores_unknown_keys(self, tmp_config):
        with open(tmp_config, "w") as f:
            json.dump({"unknown_key": "value", "http_port": 1234}, f)

        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("http_port") == 1234
        assert config.get("unknown_key") is None


class TestPortEnvironment:
    """PORT environment variable overrides the configured port."""

    def test_env_overrides_file(self, tmp_config):
        with open(tmp_config, "w") as f:
            json.dump({"http_port": 1234}, f)

        config = RelayConfig(config_path=tmp_config, environ={"PORT": "8080"})
        assert config.get("http_port") == 8080

    def test_missing_env(self):
        assert port_from_env({}) is None
        assert port_from_env({"PORT": ""}) is None

    def test_non_numeric_ignored(self):
        assert port_from_env({"PORT": "eighty"}) is None

    def test_out_of_range_ignored(self):
        assert port_from_env({"PORT": "0"}) is None
        assert port_from_env({"PORT": "70000"}) is None

    def test_valid(self):
        assert port_from_env({"PORT": "5000"}) == 5000

    def test_reads_process_env(self, monkeypatch):
        monkeypatch.setenv("PORT", "4321")
        assert port_from_env() == 4321


class TestRelayConfigGetSet:
    """Tests for get/set/update operations."""

    def test_set_unknown_key_ignored(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        config.set("totally_unknown", "value")
        assert config.get("totally_unknown") is None

    def test_get_with_default(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.get("nonexistent", "fallback") == "fallback"

    def test_update_multiple(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        config.update({"default_room": "lobby", "room_scoped": False, "bogus": 1})
        assert config.get("default_room") == "lobby"
        assert config.get("room_scoped") is False
        assert "bogus" not in config.to_dict()

    def test_to_dict_is_copy(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        d = config.to_dict()
        d["http_port"] = 1
        assert config.get("http_port") == DEFAULT_PORT

    def test_path_property(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        assert config.path == tmp_config


class TestClientSettings:
    def test_client_settings_subset(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        settings = config.client_settings()
        assert settings == {
            "default_room": "default",
            "room_scoped": True,
            "default_zoom": 16,
            "default_color": "#3498db",
        }

    def test_blank_default_room_falls_back(self, tmp_config):
        config = RelayConfig(config_path=tmp_config, environ={})
        config.set("default_room", "")
        assert config.client_settings()["default_room"] == "default"
