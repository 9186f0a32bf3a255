"""Configuration management."""
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

MIN_IP_INTERVAL_MINUTES = 5


class SamplingConfig(BaseModel):
    """Sampling cadence configuration."""
    fast_interval_seconds: float = Field(default=2.0, ge=0.5)
    slow_interval_seconds: float = Field(default=30.0, ge=1.0)
    process_count: int = Field(default=5, ge=1)
    history_size: int = Field(default=30, ge=1)
    command_timeout_seconds: float = 10.0
    debounce_seconds: float = 0.25
    workers: int = Field(default=4, ge=1)


class BondGroupConfig(BaseModel):
    """A link-aggregation group and its physical members."""
    name: str
    members: list[str]


class NetworkConfig(BaseModel):
    """Network interface selection."""
    selected_interface: str = "All"  # All, Combined, a bond name or a NIC
    bond_groups: list[BondGroupConfig] = Field(default_factory=list)
    discover_bonds: bool = True


class MetricsConfig(BaseModel):
    """Which probes run on each pass."""
    cpu: bool = True
    temperature: bool = True
    memory: bool = True
    disk: bool = True
    network: bool = True
    processes: bool = True
    power_sources: bool = True
    power: bool = True


class DisplayConfig(BaseModel):
    """Presentation preferences read by the API."""
    temperature_unit: str = "celsius"  # celsius, fahrenheit

    @field_validator("temperature_unit")
    @classmethod
    def _check_unit(cls, value: str) -> str:
        value = value.lower()
        if value not in ("celsius", "fahrenheit"):
            raise ValueError("temperature_unit must be 'celsius' or 'fahrenheit'")
        return value


class ExternalIPConfig(BaseModel):
    """Public IP polling configuration."""
    enabled: bool = True
    interval_minutes: float = 30.0
    endpoints: list[str] = Field(default_factory=lambda: [
        "https://api.ipify.org",
        "https://icanhazip.com",
        "https://ident.me",
    ])
    geo_url: str = "https://ipinfo.io/{ip}/json"
    timeout_seconds: float = 10.0

    @property
    def effective_interval_seconds(self) -> float:
        return max(MIN_IP_INTERVAL_MINUTES, self.interval_minutes) * 60


class NotificationConfig(BaseModel):
    """Ntfy.sh notification configuration."""
    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = "macstats"
    priority: str = "default"  # min, low, default, high, max
    timeout_seconds: float = 10.0
    ip_change_enabled: bool = False
    ip_change_cooldown_seconds: float = 300.0
    ups_power_change_enabled: bool = True
    ups_cooldown_seconds: float = 300.0


class CacheConfig(BaseModel):
    """Persisted key-value cache configuration."""
    path: str = str(Path.home() / ".cache" / "macstats" / "cache.db")


class ServerConfig(BaseModel):
    """Local API server configuration."""
    host: str = "127.0.0.1"
    port: int = 8765


class Config(BaseModel):
    """Main configuration."""
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    external_ip: ExternalIPConfig = Field(default_factory=ExternalIPConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    log_level: str = "INFO"


def _to_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (MACSTATS_*)
    2. Config file
    3. Defaults
    """
    config_dict = {}

    if config_path is None:
        config_path = os.environ.get(
            "MACSTATS_CONFIG_PATH",
            str(Path.home() / ".config" / "macstats" / "config.yaml"),
        )

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_dict = yaml.safe_load(f) or {}

    env_overrides = {
        "MACSTATS_FAST_INTERVAL": ("sampling.fast_interval_seconds", float),
        "MACSTATS_SLOW_INTERVAL": ("sampling.slow_interval_seconds", float),
        "MACSTATS_PROCESS_COUNT": ("sampling.process_count", int),
        "MACSTATS_INTERFACE": ("network.selected_interface", str),
        "MACSTATS_TEMP_UNIT": ("display.temperature_unit", str),
        "MACSTATS_IP_ENABLED": ("external_ip.enabled", _to_bool),
        "MACSTATS_IP_INTERVAL": ("external_ip.interval_minutes", float),
        "MACSTATS_NTFY_ENABLED": ("notifications.enabled", _to_bool),
        "MACSTATS_NTFY_SERVER": ("notifications.server_url", str),
        "MACSTATS_NTFY_TOPIC": ("notifications.topic", str),
        "MACSTATS_IP_NOTIFY": ("notifications.ip_change_enabled", _to_bool),
        "MACSTATS_IP_NOTIFY_COOLDOWN": ("notifications.ip_change_cooldown_seconds", float),
        "MACSTATS_UPS_NOTIFY": ("notifications.ups_power_change_enabled", _to_bool),
        "MACSTATS_CACHE_PATH": ("cache.path", str),
        "MACSTATS_HOST": ("server.host", str),
        "MACSTATS_PORT": ("server.port", int),
        "MACSTATS_LOG_LEVEL": ("log_level", str),
    }

    for env_var, (path, converter) in env_overrides.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested(config_dict, path, converter(value))

    return Config(**config_dict)


def _set_nested(d: dict, path: str, value) -> None:
    """Set a nested dictionary value using dot notation."""
    keys = path.split(".")
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value
