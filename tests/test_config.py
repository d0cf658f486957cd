"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from homehub.config import (
    HomeHubConfig,
    SecretsConfig,
    apply_secrets,
    find_config_dir,
    load_config,
    load_secrets,
)


class TestConfig:
    """Tests for YAML config and secrets."""

    def test_missing_files_give_defaults(self, tmp_path):
        config = load_config(tmp_path)

        assert config.kv.base_url == "http://localhost:8787"
        assert config.mqtt is None
        assert config.hue is None
        assert config.registry.persist_debounce == 0.5
        assert load_secrets(tmp_path) == SecretsConfig()

    def test_load_yaml(self, tmp_path):
        (tmp_path / "config.yaml").write_text(
            "name: Flat\n"
            "kv:\n"
            "  base_url: http://kv.lan:8787\n"
            "mqtt:\n"
            "  host: broker.lan\n"
            "  max_reconnect_attempts: 5\n"
            "hue:\n"
            "  ip: 192.168.1.2\n"
            "adapters:\n"
            "  command_timeout: 3\n"
        )

        config = load_config(tmp_path)

        assert config.name == "Flat"
        assert config.mqtt.host == "broker.lan"
        assert config.mqtt.port == 1883
        assert config.mqtt.max_reconnect_attempts == 5
        assert config.hue.ip == "192.168.1.2"
        assert config.adapters.command_timeout == 3

    def test_reconnect_delay_floor(self):
        with pytest.raises(ValidationError):
            HomeHubConfig.model_validate({"mqtt": {"reconnect_min_delay": 0.1}})

    def test_apply_secrets(self, tmp_path):
        (tmp_path / "secrets.yaml").write_text(
            "kv:\n"
            "  auth_token: kv-token\n"
            "mqtt:\n"
            "  username: hub\n"
            "  password: pw\n"
            "hue:\n"
            "  username: bridge-key\n"
        )
        config = HomeHubConfig.model_validate({"mqtt": {}, "hue": {"ip": "10.0.0.9"}})

        merged = apply_secrets(config, load_secrets(tmp_path))

        assert merged.kv.auth_token == "kv-token"
        assert merged.mqtt.username == "hub"
        assert merged.mqtt.password == "pw"
        assert merged.hue.username == "bridge-key"
        assert config.kv.auth_token is None

    def test_secrets_without_sections(self):
        config = HomeHubConfig()

        merged = apply_secrets(config, SecretsConfig(mqtt={"username": "hub"}))

        assert merged.mqtt is None

    def test_find_config_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOMEHUB_CONFIG_DIR", str(tmp_path))
        assert find_config_dir() == tmp_path

    def test_find_config_dir_in_cwd(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HOMEHUB_CONFIG_DIR", raising=False)
        (tmp_path / "config").mkdir()
        monkeypatch.chdir(tmp_path)

        assert find_config_dir() == tmp_path / "config"
