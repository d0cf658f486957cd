"""Configuration loading for HomeHub."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class KVConfig(BaseModel):
    """KV REST service connection."""

    base_url: str = "http://localhost:8787"
    auth_token: str | None = None
    timeout: float = Field(10.0, gt=0)


class MqttConfig(BaseModel):
    """MQTT broker connection and reconnect policy."""

    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str | None = None
    keepalive: int = 60
    connect_timeout: float = Field(30.0, gt=0)
    reconnect_min_delay: float = Field(1.0, ge=1.0)
    reconnect_max_delay: float = Field(30.0, ge=1.0)
    max_reconnect_attempts: int | None = None


class HueConfig(BaseModel):
    """Local Hue bridge."""

    ip: str
    username: str | None = None
    timeout: float = Field(5.0, gt=0)


class AdapterConfig(BaseModel):
    """Time bounds shared by all device adapters."""

    command_timeout: float = Field(5.0, gt=0)
    confirm_timeout: float = Field(5.0, gt=0)
    discovery_wait: float = Field(2.0, ge=0)


class RegistryConfig(BaseModel):
    """Device registry persistence and polling."""

    persist_debounce: float = Field(0.5, ge=0)
    poll_interval: float = Field(30.0, gt=0)
    cache_path: str = "homehub_cache.db"


class HomeHubConfig(BaseModel):
    """Main configuration model."""

    name: str = "Home"
    kv: KVConfig = Field(default_factory=KVConfig)
    mqtt: MqttConfig | None = None
    hue: HueConfig | None = None
    adapters: AdapterConfig = Field(default_factory=AdapterConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)


class SecretsConfig(BaseModel):
    """Secrets configuration model."""

    kv: dict[str, str] = Field(default_factory=dict)
    mqtt: dict[str, Any] = Field(default_factory=dict)
    hue: dict[str, str] = Field(default_factory=dict)


def find_config_dir() -> Path:
    """Find the config directory.

    Looks for config directory in the following order:
    1. $HOMEHUB_CONFIG_DIR
    2. ./config (relative to cwd)
    3. ../config (parent of cwd)
    4. ~/.config/homehub
    """
    env_dir = os.environ.get("HOMEHUB_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)

    cwd = Path.cwd()

    if (cwd / "config").is_dir():
        return cwd / "config"

    if (cwd.parent / "config").is_dir():
        return cwd.parent / "config"

    home_config = Path.home() / ".config" / "homehub"
    if home_config.is_dir():
        return home_config

    return cwd / "config"


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_config(config_dir: Path | None = None) -> HomeHubConfig:
    """Load the main configuration."""
    if config_dir is None:
        config_dir = find_config_dir()

    data = load_yaml(config_dir / "config.yaml")
    return HomeHubConfig.model_validate(data)


def load_secrets(config_dir: Path | None = None) -> SecretsConfig:
    """Load the secrets configuration."""
    if config_dir is None:
        config_dir = find_config_dir()

    data = load_yaml(config_dir / "secrets.yaml")
    return SecretsConfig.model_validate(data)


def apply_secrets(config: HomeHubConfig, secrets: SecretsConfig) -> HomeHubConfig:
    """Return a copy of ``config`` with credentials from ``secrets`` filled in."""
    update: dict[str, Any] = {}
    if secrets.kv.get("auth_token"):
        update["kv"] = config.kv.model_copy(update={"auth_token": secrets.kv["auth_token"]})
    if config.mqtt is not None and secrets.mqtt:
        creds = {k: secrets.mqtt[k] for k in ("username", "password") if k in secrets.mqtt}
        update["mqtt"] = config.mqtt.model_copy(update=creds)
    if config.hue is not None and secrets.hue.get("username"):
        update["hue"] = config.hue.model_copy(update={"username": secrets.hue["username"]})
    return config.model_copy(update=update)
