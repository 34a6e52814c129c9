"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..core.orchestrator import DEFAULT_COST, DEFAULT_DESCRIPTION
from ..sdk.model_client import DEFAULT_BASE_URL, DEFAULT_MODEL
from ..storage.db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH
from ..storage.ledger import WELCOME_CREDITS


@dataclass(frozen=True)
class LedgerConfig:
    """Storage and ledger settings."""
    db_path: str = DEFAULT_DB_PATH
    welcome_credits: int = WELCOME_CREDITS
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    conflict_attempts: int = 3
    conflict_backoff: float = 0.05

    def __post_init__(self):
        """Validate ledger values."""
        if not self.db_path:
            raise ValueError("db_path must not be empty")
        if self.welcome_credits < 0:
            raise ValueError("welcome_credits must be >= 0")
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")
        if self.conflict_attempts < 1:
            raise ValueError("conflict_attempts must be >= 1")
        if self.conflict_backoff < 0:
            raise ValueError("conflict_backoff must be >= 0")


@dataclass(frozen=True)
class ModelConfig:
    """Model endpoint settings."""
    name: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key_env: str = "XAI_API_KEY"
    max_retries: int = 3
    backoff_base: float = 2.0
    timeout: float = 60.0
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 4000
    retry_on_status: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """Validate model values."""
        if not self.name:
            raise ValueError("model name must not be empty")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.backoff_base < 1:
            raise ValueError("backoff_base must be >= 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        for status in self.retry_on_status:
            if not 400 <= status < 500:
                raise ValueError(f"retry_on_status only accepts 4xx codes, got {status}")

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


@dataclass(frozen=True)
class GenerationConfig:
    """Pricing of a generation."""
    cost: int = DEFAULT_COST
    description: str = DEFAULT_DESCRIPTION

    def __post_init__(self):
        """Validate generation values."""
        if self.cost <= 0:
            raise ValueError("cost must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)


_SECTIONS = {
    "ledger": LedgerConfig,
    "model": ModelConfig,
    "generation": GenerationConfig,
}

_INT_KEYS = {"welcome_credits", "conflict_attempts", "max_retries", "max_tokens", "cost"}
_FLOAT_KEYS = {"busy_timeout", "conflict_backoff", "backoff_base", "timeout", "temperature"}
_STR_KEYS = {"db_path", "name", "base_url", "api_key_env", "description"}
_NULLABLE_KEYS = {"temperature", "max_tokens"}


def _parse_value(key: str, value: Any, path: str) -> Any:
    if value is None and key in _NULLABLE_KEYS:
        return None
    if key in _INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{key}' in {path} must be an integer")
        return value
    if key in _FLOAT_KEYS:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        return float(value)
    if key in _STR_KEYS:
        if not isinstance(value, str):
            raise ValueError(f"'{key}' in {path} must be a string")
        return value
    if key == "retry_on_status":
        if not isinstance(value, list) or not all(
            isinstance(v, int) and not isinstance(v, bool) for v in value
        ):
            raise ValueError(f"'retry_on_status' in {path} must be a list of integers")
        return tuple(value)
    raise ValueError(f"Unknown key in {path}: {key}")


def _parse_section(name: str, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    section_cls = _SECTIONS[name]
    allowed = set(section_cls.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    values: Dict[str, Any] = {key: _parse_value(key, value, name) for key, value in data.items()}
    return section_cls(**values)


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected charges or runaway retries. Every section and key
    is optional; omitted values take their defaults.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _parse_section(name, data) for name, data in raw_config.items()}
    return AppConfig(**sections)
