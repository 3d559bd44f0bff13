"""
Configuration loading for chbot

Settings are layered: model defaults, then config.yaml, then CHBOT_*
environment variables, then explicit overrides (command-line flags).
The resulting AppConfig is immutable and passed explicitly to the parts
of the bot that need it.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_FILE = Path("config.yaml")

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "CHBOT_CLICKHOUSE_URL": ("clickhouse", "url"),
    "CHBOT_CLICKHOUSE_USER": ("clickhouse", "user"),
    "CHBOT_CLICKHOUSE_PASSWORD": ("clickhouse", "password"),
    "CHBOT_BOT_TOKEN": ("bot", "token"),
    "CHBOT_OUTPUT_LIMIT": ("query", "output_limit"),
}


class ConfigError(ValueError):
    """Raised when configuration cannot be read or does not validate."""


class RewritePolicy(BaseModel):
    """Row ceiling and output format enforced on every query."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_rows: int = Field(
        default=10,
        gt=0,
        validation_alias=AliasChoices("max_rows", "output_limit"),
    )
    target_format: str = Field(default="CSVWithNames", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")


class ClickHouseSettings(BaseModel):
    """Where and as whom queries are executed."""

    model_config = ConfigDict(frozen=True)

    url: str = "https://clickhouse.nxthdr.dev"
    user: str = "default"
    password: str = ""
    connect_timeout: int = Field(default=10, gt=0)
    send_receive_timeout: int = Field(default=60, gt=0)
    # Sends max_result_rows with each query; accounts with readonly=1 must turn this off
    enforce_result_rows: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"ClickHouse URL must be http(s)://host[:port]: {value}")
        return value


class BotSettings(BaseModel):
    """Chat webhook server settings."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = Field(default=8080, gt=0, lt=65536)
    token: Optional[str] = None
    command: str = "query"


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    query_log_enabled: bool = False
    logs_directory: str = "logs"


class AppConfig(BaseModel):
    """Complete bot configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    clickhouse: ClickHouseSettings = Field(default_factory=ClickHouseSettings)
    bot: BotSettings = Field(default_factory=BotSettings)
    policy: RewritePolicy = Field(
        default_factory=RewritePolicy,
        validation_alias=AliasChoices("policy", "query"),
    )
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _read_yaml(path: Optional[Path]) -> Dict[str, Any]:
    """Read the YAML file; a missing default file just means no file settings."""
    config_path = path or DEFAULT_CONFIG_FILE
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fold alternate spellings so later layers override a single key."""
    if "policy" in data:
        data["query"] = data.pop("policy")
    query = data.get("query")
    if isinstance(query, dict) and "max_rows" in query:
        query["output_limit"] = query.pop("max_rows")
    return data


def _merge(data: Dict[str, Any], section: str, key: str, value: Any) -> None:
    current = data.get(section)
    if not isinstance(current, dict):
        current = {}
        data[section] = current
    current[key] = value


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """
    Build the application configuration.

    Args:
        path: YAML file to read. Defaults to ./config.yaml when present.
        overrides: {section: {key: value}} applied last; None values are ignored.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Validated, immutable AppConfig.

    Raises:
        ConfigError: If the file is unreadable or any value is invalid.
    """
    data = _normalize(_read_yaml(path))
    environ = os.environ if environ is None else environ

    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            _merge(data, section, key, value)

    for section, values in (overrides or {}).items():
        for key, value in values.items():
            if value is not None:
                _merge(data, section, key, value)

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
