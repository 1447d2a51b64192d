"""
Configuration management for asbclient.

Loads client settings from a YAML/JSON file and ASB_* environment variables.
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from asbclient.servicebus.client import DEFAULT_HTTP_TIMEOUT
from asbclient.servicebus.models import ClientIdentity, EntityKind

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = Field(default="text", pattern="^(text|json)$")
    file: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v


class ClientSettings(BaseModel):
    """
    Settings for a Service Bus client.

    Example YAML:
        ```yaml
        namespace: tester
        key_name: RootManageSharedAccessKey
        key: gC9nJzD3UoxDP8LvQWkQihlvb6dBHpdxh7hXj3Trk5s=
        kind: topic
        entity: events
        subscription: audit
        logging:
          level: DEBUG
        ```
    """

    namespace: str = ""
    key_name: str = ""
    key: SecretStr = SecretStr("")
    kind: EntityKind = EntityKind.QUEUE
    entity: Optional[str] = Field(default=None, description="Default queue or topic path")
    subscription: Optional[str] = None
    endpoint: Optional[str] = Field(default=None, description="Override of the namespace URL, e.g. an emulator")
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> Any:
        """Accept 'Queue' / 'TOPIC' and friends."""
        if isinstance(v, str):
            return v.lower()
        return v

    def identity(self) -> ClientIdentity:
        """
        Build the client identity.

        Raises:
            pydantic.ValidationError: If namespace or key name is missing
        """
        return ClientIdentity(
            namespace=self.namespace,
            kind=self.kind,
            key_name=self.key_name,
            key=self.key,
            subscription=self.subscription,
            endpoint=self.endpoint,
        )


# Environment variable -> (section, field)
ENV_VARS = {
    "ASB_NAMESPACE": (None, "namespace"),
    "ASB_KEY_NAME": (None, "key_name"),
    "ASB_KEY_VALUE": (None, "key"),
    "ASB_ENTITY_KIND": (None, "kind"),
    "ASB_ENTITY": (None, "entity"),
    "ASB_SUBSCRIPTION": (None, "subscription"),
    "ASB_ENDPOINT": (None, "endpoint"),
    "ASB_HTTP_TIMEOUT": (None, "http_timeout"),
    "ASB_LOG_LEVEL": ("logging", "level"),
    "ASB_LOG_FORMAT": ("logging", "format"),
    "ASB_LOG_FILE": ("logging", "file"),
}


def _load_from_file(file_path: str) -> Dict[str, Any]:
    """Load settings from a YAML or JSON file."""
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(path, 'r') as f:
        if path.suffix in ['.yaml', '.yml']:
            return yaml.safe_load(f) or {}
        elif path.suffix == '.json':
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")


def _load_from_env() -> Dict[str, Any]:
    """Load settings from ASB_* environment variables."""
    config: Dict[str, Any] = {}

    for var, (section, name) in ENV_VARS.items():
        value = os.getenv(var)
        if not value:
            continue
        if section:
            config.setdefault(section, {})[name] = value
        else:
            config[name] = value

    return config


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two configuration dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(
    config_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> ClientSettings:
    """
    Load and validate client settings.

    Precedence (highest to lowest):
    1. ``overrides`` (CLI arguments; ``None`` values are ignored)
    2. Environment variables (ASB_*)
    3. Configuration file (YAML/JSON)
    4. Defaults

    Args:
        config_file: Path to a configuration file
        overrides: Explicit overrides

    Returns:
        Validated ClientSettings

    Raises:
        FileNotFoundError: If ``config_file`` does not exist
        ValueError: If ``config_file`` has an unsupported suffix
        pydantic.ValidationError: If a value is invalid
    """
    config_dict: Dict[str, Any] = {}

    if config_file:
        config_dict = _load_from_file(config_file)
        logger.debug(f"Loaded configuration from file: {config_file}")

    env_config = _load_from_env()
    if env_config:
        config_dict = _merge(config_dict, env_config)
        logger.debug(f"Applied {len(env_config)} environment variable overrides")

    if overrides:
        config_dict = _merge(config_dict, {k: v for k, v in overrides.items() if v is not None})

    return ClientSettings(**config_dict)
