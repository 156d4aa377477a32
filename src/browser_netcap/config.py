from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from browser_netcap.errors import NetcapError

_MB = 1024 * 1024


class BrowserEndpointConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 9222
    probe_timeout: float = 5.0

    @field_validator("port")
    @classmethod
    def check_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {v}")
        return v

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class CaptureConfig(BaseModel):
    max_total_buffer_size: int = 100 * _MB
    max_resource_buffer_size: int = 10 * _MB
    body_fetch_timeout: float = 10.0
    binary_preview_chars: int = 100
    wait_for_debugger_on_start: bool = True
    discovery_timeout: float = 2.0


class DaemonConfig(BaseModel):
    health_check_interval: float = 60.0
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "DEBUG"


class ClientConfig(BaseModel):
    request_timeout: float = 5.0
    spawn_poll_attempts: int = 30
    spawn_poll_interval: float = 0.1


class NetcapConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NETCAP_",
        env_nested_delimiter="__",
    )

    browser: BrowserEndpointConfig = Field(default_factory=BrowserEndpointConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Env vars beat values loaded from a config file (passed as init kwargs).
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def apply_env_overrides(config: NetcapConfig) -> NetcapConfig:
    """Apply the short-form NETCAP_* env vars that don't follow the nested pattern."""

    overrides: dict[str, str] = {}

    # NETCAP_CDP_PORT -> browser.port
    cdp_port = os.environ.get("NETCAP_CDP_PORT")
    if cdp_port is not None:
        overrides["port"] = cdp_port

    # NETCAP_CDP_HOST -> browser.host
    cdp_host = os.environ.get("NETCAP_CDP_HOST")
    if cdp_host is not None:
        overrides["host"] = cdp_host

    if overrides:
        try:
            config.browser = BrowserEndpointConfig.model_validate(
                {**config.browser.model_dump(), **overrides}
            )
        except ValidationError as e:
            raise NetcapError(
                f"Invalid NETCAP_CDP_PORT/NETCAP_CDP_HOST: {e.errors()[0]['msg']}"
            ) from e

    return config


def get_version() -> str:
    """Return the package version string."""
    try:
        from importlib.metadata import version

        return version("browser-netcap")
    except Exception:
        return "0.1.0"


def load_config(config_path: str | None = None) -> NetcapConfig:
    """Load configuration from a JSON file and/or environment variables.

    Priority (highest to lowest):
        1. NETCAP_* environment variables
        2. Explicitly provided config_path JSON file
        3. Default config file at ~/.browser-netcap/config.json
        4. Built-in defaults
    """
    file_values: dict = {}

    if config_path is not None:
        config_file = Path(config_path)
        if config_file.is_file():
            file_values = json.loads(config_file.read_text(encoding="utf-8"))
    else:
        from browser_netcap.session import read_user_config

        file_values = read_user_config() or {}

    config = NetcapConfig(**file_values)
    return apply_env_overrides(config)
