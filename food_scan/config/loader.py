"""
Configuration management and loading.

Handles application settings from a YAML file. The OpenAI API key is not
part of the file; the SDK reads it from ``OPENAI_API_KEY``.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from food_scan.core.retry import NETWORK_POLICY, PROCESSING_POLICY, RetryPolicy
from food_scan.storage.db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATH = "food-scan.yaml"


@dataclass(frozen=True)
class ApiConfig:
    """Vision and recipe API settings."""
    base_url: Optional[str] = None
    vision_model: str = "gpt-4o"
    text_model: str = "gpt-4"
    timeout_seconds: float = 30.0
    max_recipe_suggestions: int = 5

    def __post_init__(self):
        """Validate API settings."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_recipe_suggestions < 1:
            raise ValueError("max_recipe_suggestions must be >= 1")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policies per call-site category.

    ``network`` covers transport failures, ``processing`` re-asks when a
    reply cannot be parsed.
    """
    network: RetryPolicy = NETWORK_POLICY
    processing: RetryPolicy = PROCESSING_POLICY


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    api: ApiConfig = field(default_factory=ApiConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def load_app_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration from YAML.

    With no ``path``, ``food-scan.yaml`` in the working directory is used
    if present, otherwise the built-in defaults. An explicit path must exist.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        config_path = Path(DEFAULT_CONFIG_PATH)
        if not config_path.exists():
            return AppConfig()
    else:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _check_keys(raw_config, {'api', 'retry', 'storage'}, "configuration")

    return AppConfig(
        api=_parse_api_config(_section(raw_config, 'api')),
        retry=_parse_retry_config(_section(raw_config, 'retry')),
        storage=_parse_storage_config(_section(raw_config, 'storage')),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str) -> Any:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _parse_api_config(data: Dict) -> ApiConfig:
    _check_keys(
        data,
        {'base_url', 'vision_model', 'text_model', 'timeout_seconds', 'max_recipe_suggestions'},
        "api",
    )
    config = ApiConfig()

    for key in ('base_url', 'vision_model', 'text_model'):
        if key in data:
            if not isinstance(data[key], str) or not data[key].strip():
                raise ValueError(f"'{key}' in api must be a non-empty string")
            config = replace(config, **{key: data[key].strip()})

    if 'timeout_seconds' in data:
        config = replace(config, timeout_seconds=float(_number(data, 'timeout_seconds', "api")))
    if 'max_recipe_suggestions' in data:
        value = _number(data, 'max_recipe_suggestions', "api")
        if not isinstance(value, int):
            raise ValueError("'max_recipe_suggestions' in api must be an integer")
        config = replace(config, max_recipe_suggestions=value)

    return config


def _parse_retry_config(data: Dict) -> RetryConfig:
    _check_keys(data, {'network', 'processing'}, "retry")
    config = RetryConfig()
    for category in ('network', 'processing'):
        if category not in data:
            continue
        overrides = data[category]
        if not isinstance(overrides, dict):
            raise ValueError(f"'retry.{category}' must be a dictionary")
        base = getattr(config, category)
        config = replace(config, **{category: _parse_retry_policy(overrides, base, f"retry.{category}")})
    return config


def _parse_retry_policy(data: Dict, base: RetryPolicy, path: str) -> RetryPolicy:
    """Overlay ``data`` on ``base``.

    Raises:
        ValueError: On unknown keys, wrong types or out-of-range values
    """
    _check_keys(
        data,
        {'max_attempts', 'initial_delay', 'max_delay', 'backoff_multiplier', 'exponential', 'jitter_ratio'},
        path,
    )
    changes: Dict[str, Any] = {}

    if 'max_attempts' in data:
        value = _number(data, 'max_attempts', path)
        if not isinstance(value, int):
            raise ValueError(f"'max_attempts' in {path} must be an integer")
        changes['max_attempts'] = value
    for key in ('initial_delay', 'max_delay', 'backoff_multiplier', 'jitter_ratio'):
        if key in data:
            changes[key] = float(_number(data, key, path))
    if 'exponential' in data:
        if not isinstance(data['exponential'], bool):
            raise ValueError(f"'exponential' in {path} must be true or false")
        changes['use_exponential'] = data['exponential']

    try:
        return replace(base, **changes)
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}")


def _parse_storage_config(data: Dict) -> StorageConfig:
    _check_keys(data, {'db_path'}, "storage")
    if 'db_path' not in data:
        return StorageConfig()
    db_path = data['db_path']
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'db_path' in storage must be a non-empty string")
    return StorageConfig(db_path=db_path)
