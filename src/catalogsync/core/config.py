"""
Configuration models and YAML loader.

All tunables of the rate limiter, API client and cursor scanner live here as
Pydantic models so they can be validated once and passed to the components
explicitly.

Example YAML:

    api:
      base_url: https://api.mercadolibre.com
      access_token: ${CATALOGSYNC_ACCESS_TOKEN}
    rate_limit:
      max_ceiling: 1400
    scan:
      page_size: 50
      page_budget: 500
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from ..exceptions import ConfigError


# Remote multi-get endpoint refuses more than 20 ids per call
MAX_BATCH_SIZE = 20

ENV_ACCESS_TOKEN = "CATALOGSYNC_ACCESS_TOKEN"
ENV_BASE_URL = "CATALOGSYNC_BASE_URL"

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


class RateLimitConfig(BaseModel):
    """Sliding-window limiter settings (defaults match a 1500 req/min quota)"""

    max_ceiling: int = Field(1400, gt=0)
    min_ceiling: int = Field(600, gt=0)
    window_seconds: float = Field(60.0, gt=0)
    safety_margin_pct: float = Field(0.1, ge=0, lt=1)
    near_limit_ratio: float = Field(0.8, gt=0, le=1)
    backoff_factor: float = Field(0.8, gt=0, lt=1)
    default_retry_after: float = Field(60.0, ge=0)
    recovery_delay: float = Field(300.0, ge=0)
    recovery_step: int = Field(100, gt=0)
    low_remaining_threshold: int = Field(100, ge=0)
    derate_factor: float = Field(0.5, gt=0, le=1)
    queue_item_delay: float = Field(0.05, ge=0)
    stats_log_every: int = Field(100, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RateLimitConfig":
        if self.min_ceiling > self.max_ceiling:
            raise ValueError("min_ceiling must not exceed max_ceiling")
        return self


class ClientConfig(BaseModel):
    """Marketplace HTTP client settings"""

    base_url: str = "https://api.mercadolibre.com"
    access_token: Optional[str] = None
    timeout: float = Field(30.0, gt=0)
    batch_size: int = Field(MAX_BATCH_SIZE, gt=0, le=MAX_BATCH_SIZE)
    batch_delay: float = Field(0.1, ge=0)
    user_agent: str = "catalogsync/1.0"


class ScanConfig(BaseModel):
    """Cursor scan settings"""

    page_size: int = Field(50, gt=0, le=100)
    # Entries per invocation; keeps worst-case page latency under the host timeout
    page_budget: int = Field(500, gt=0)
    page_delay: float = Field(0.1, ge=0)
    near_limit_page_delay: float = Field(2.0, ge=0)
    max_duplicate_pages: int = Field(2, gt=0)
    max_cursor_restarts: int = Field(1, ge=0)
    min_seconds_per_page: float = Field(3.0, ge=0)
    checkpoint_ttl: float = Field(600.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class AppConfig(BaseModel):
    """Top-level configuration"""

    api: ClientConfig = Field(default_factory=ClientConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _expand_env_vars(value: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values"""
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            name, default = match.group(1), match.group(2)
            return os.environ.get(name, default if default is not None else "")
        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    return value


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}", path=str(path))

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}", path=str(path), details=str(e)) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}", path=str(path), details=str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be a mapping", path=str(path))
    return data


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load configuration from a YAML file and the environment.

    Args:
        path: YAML file to read (None = defaults only)

    Returns:
        Validated AppConfig

    Raises:
        ConfigError: If the file is missing, unparsable or fails validation
    """
    data: Dict[str, Any] = {}
    if path is not None:
        data = _expand_env_vars(_load_yaml_file(Path(path)))

    api = data.setdefault("api", {}) or {}
    if not isinstance(api, dict):
        raise ConfigError(
            "Section 'api' must be a mapping",
            path=str(path) if path is not None else None,
        )
    data["api"] = api
    if os.environ.get(ENV_ACCESS_TOKEN):
        api["access_token"] = os.environ[ENV_ACCESS_TOKEN]
    if os.environ.get(ENV_BASE_URL):
        api["base_url"] = os.environ[ENV_BASE_URL]
    if api.get("access_token") == "":
        api["access_token"] = None

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            "Invalid configuration",
            path=str(path) if path is not None else None,
            details=str(e),
        ) from e
