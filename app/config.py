"""Application configuration helpers for emby-302.

Usage:
    from app.config import get_settings
    settings = get_settings()
    print(settings.emby.host, settings.emby.strm.path_map)

The YAML file location defaults to /app/config.yml and can be overridden with
the EMBY302_CONFIG environment variable.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.emby.path_map import PathMapRule, parse_path_map


logger = logging.getLogger("emby_302.config")

DEFAULT_CONFIG_PATH = "/app/config.yml"
BLOCK_DOWNLOAD_STRATEGY = "403"
UPSTREAM_TIMEOUT_S = 10.0
FILTER_MODES = {"blacklist", "whitelist"}


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be used to start the service."""


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int

    @field_validator("port", mode="before")
    @classmethod
    def _require_port(cls, value: Any) -> Any:
        if value is None or not str(value).strip():
            raise ValueError("server.port is required")
        return str(value).strip()

    @field_validator("port")
    @classmethod
    def _check_range(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("server.port must be between 1 and 65535")
        return value


class StrmConfig(BaseModel):
    """Ordered path-mapping rules; first match wins."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    path_map: Tuple[PathMapRule, ...] = Field(default=(), alias="path-map")

    @field_validator("path_map", mode="before")
    @classmethod
    def _parse_rules(cls, value: Any) -> Any:
        if value is None:
            return ()
        if not isinstance(value, (list, tuple)):
            logger.warning("Ignoring path-map: expected a list of rules, got %s", type(value).__name__)
            return ()
        if all(isinstance(item, PathMapRule) for item in value):
            return tuple(value)
        entries = []
        for item in value:
            if item is None or isinstance(item, (dict, list, tuple)):
                logger.warning("Ignoring invalid path-map rule: %r", item)
                continue
            entries.append(str(item))
        return parse_path_map(entries)


class EmbyConnection(BaseModel):
    """Upstream Emby descriptor, read-only after startup."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host: str
    api_key: str = ""
    download_strategy: str = Field(default=BLOCK_DOWNLOAD_STRATEGY, alias="download-strategy")
    strm: StrmConfig = Field(default_factory=StrmConfig)

    @field_validator("host", mode="before")
    @classmethod
    def _require_host(cls, value: Any) -> Any:
        if value is None or not str(value).strip():
            raise ValueError("emby.host is required")
        return str(value).strip()

    @field_validator("api_key", mode="before")
    @classmethod
    def _default_api_key(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("download_strategy", mode="before")
    @classmethod
    def _default_strategy(cls, value: Any) -> str:
        cleaned = "" if value is None else str(value).strip()
        return cleaned or BLOCK_DOWNLOAD_STRATEGY

    @property
    def base_url(self) -> str:
        return self.host.rstrip("/")

    @property
    def timeout_s(self) -> float:
        return UPSTREAM_TIMEOUT_S


class ClientFilterConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enable: bool = Field(default=False, alias="Enable")
    mode: str = Field(default="blacklist", alias="Mode")
    client_list: Tuple[str, ...] = Field(default=(), alias="ClientList")

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> str:
        cleaned = "" if value is None else str(value).strip().lower()
        return cleaned or "blacklist"

    @field_validator("client_list", mode="before")
    @classmethod
    def _normalize_clients(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            cleaned = (str(item).strip().lower() for item in value if item is not None)
            return tuple(item for item in cleaned if item)
        return value

    @model_validator(mode="after")
    def _check_mode(self) -> "ClientFilterConfig":
        if self.enable and self.mode not in FILTER_MODES:
            raise ValueError("ClientFilter.Mode must be 'BlackList' or 'WhiteList'")
        return self


class Settings(BaseModel):
    """Strongly-typed settings loaded from the YAML configuration file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    server: ServerConfig
    emby: EmbyConnection
    client_filter: ClientFilterConfig = Field(default_factory=ClientFilterConfig, alias="ClientFilter")

    @field_validator("client_filter", mode="before")
    @classmethod
    def _default_filter(cls, value: Any) -> Any:
        return {} if value is None else value


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def load_settings(path: Path | str) -> Settings:
    """Load and validate settings from a YAML file, raising ConfigError when unusable."""

    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {config_path}: {exc}") from exc
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    for section in ("server", "emby"):
        if not isinstance(data.get(section), dict):
            raise ConfigError(f"Config section '{section}' is required")
    try:
        settings = Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {_format_validation_error(exc)}") from exc

    client_filter = settings.client_filter
    if client_filter.enable:
        for client in client_filter.client_list:
            logger.info("Loaded client filter entry (%s): %s", client_filter.mode, client)
    return settings


def config_path_from_env() -> Path:
    return Path(os.getenv("EMBY302_CONFIG") or DEFAULT_CONFIG_PATH)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings loaded from the configured YAML file."""

    return load_settings(config_path_from_env())


def reset_settings_cache() -> None:
    """Clear cached settings (useful for tests when environment changes)."""

    get_settings.cache_clear()
