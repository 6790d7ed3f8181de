"""Configuration management for sitekv."""

from .schema import (
    DeploymentConfig,
    KVLimits,
    RetryConfig,
    create_default_config,
    validate_config,
)

import os
import json
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..utils.environment import load_env_file, parse_bool

__all__ = [
    "DeploymentConfig",
    "KVLimits",
    "RetryConfig",
    "create_default_config",
    "validate_config",
    "load_config",
    "ENV_VARS",
]

# Environment variable -> config field
ENV_VARS = {
    "CLOUDFLARE_API_TOKEN": "api_token",
    "CLOUDFLARE_ACCOUNT_ID": "account_id",
    "CLOUDFLARE_NAMESPACE_ID": "namespace_id",
    "SITEKV_USE_BULK_UPLOAD": "use_bulk_upload",
}


def _read_config_file(config_file: str) -> Dict[str, Any]:
    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_file}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file {config_file}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {config_file} must contain a JSON object")
    return _normalize_keys(data)


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Rename original option names (apiToken, accountID, ...) to field names."""
    aliases = {
        field.alias: name
        for name, field in DeploymentConfig.model_fields.items()
        if field.alias
    }
    return {aliases.get(key, key): value for key, value in data.items()}


def load_config(
    config_file: Optional[str] = None,
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> DeploymentConfig:
    """Load configuration from a JSON file, a .env file and the environment.

    Later sources win: config file, then .env file, then the process
    environment, then explicit keyword overrides.

    Raises:
        ConfigurationError: if any source is unreadable or a value is invalid
    """
    data: Dict[str, Any] = {}
    if config_file:
        data.update(_read_config_file(config_file))

    env_values: Dict[str, str] = {}
    if env_file:
        try:
            env_values.update(load_env_file(env_file))
        except ValueError as e:
            raise ConfigurationError(str(e))
    if environ is None:
        environ = os.environ

    for var, field_name in ENV_VARS.items():
        # An empty process variable does not mask a value from the .env file
        value = environ.get(var) or env_values.get(var)
        if value is None or value == "":
            continue
        if field_name == "use_bulk_upload":
            data[field_name] = parse_bool(value, default=True)
        else:
            data[field_name] = value

    data.update(_normalize_keys({k: v for k, v in overrides.items() if v is not None}))

    try:
        return DeploymentConfig.from_dict(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
