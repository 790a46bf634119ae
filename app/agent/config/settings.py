"""
Configuration management for the crawling agent.

Uses pydantic-settings to load configuration from environment variables
and YAML files with proper validation.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ...schema.messages import AgentDescriptor
from ..core.types import InFlightJobPolicy, TransportMode
from ..utils.retry import RetryConfig


class AgentSettings(BaseSettings):
    """
    Main settings class that loads configuration from environment variables
    and configuration files.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Environment
    environment: str = Field("dev", description="Environment name (dev/staging/prod)")

    # Job server
    transport: TransportMode = Field(TransportMode.HTTP, description="websocket or http polling")
    server_url: str = Field("http://localhost:8787", description="HTTP base URL of the job server")
    websocket_url: Optional[str] = Field(None, description="WebSocket URL (derived from server_url if unset)")
    api_prefix: str = Field("/api")
    request_timeout_seconds: float = Field(10.0, gt=0)
    connect_timeout_seconds: float = Field(10.0, gt=0)

    # Identity
    agent_id: Optional[str] = Field(None, description="Fixed agent ID (loaded from the store if unset)")
    agent_alias: Optional[str] = None

    # Registration descriptor
    agent_name: str = Field("Chrome Extension Agent")
    capabilities: List[str] = Field(default_factory=lambda: ["chrome_extension", "naver_shopping"])
    supported_sites: List[str] = Field(default_factory=lambda: ["naver.com", "shopping.naver.com"])
    agent_version: str = Field("2.0.0")

    # Resource pool
    pool_size: int = Field(3, ge=1, le=50)
    health_check_interval_seconds: float = Field(10.0, gt=0)

    # Job execution
    default_job_timeout_ms: int = Field(30000, ge=1)
    ready_poll_interval_ms: int = Field(100, ge=1)
    settle_delay_ms: int = Field(200, ge=0)
    search_url_template: str = Field("https://search.shopping.naver.com/search/all?query={query}")
    identity_change_job_policy: InFlightJobPolicy = Field(InFlightJobPolicy.DROP)

    # Connection
    heartbeat_interval_seconds: float = Field(30.0, gt=0)
    poll_interval_ms: int = Field(800, ge=50, le=60000)
    reconnect_base_delay_seconds: float = Field(3.0, gt=0)
    reconnect_backoff_multiplier: float = Field(1.5, ge=1.0)
    reconnect_max_delay_seconds: float = Field(10.0, gt=0)
    heartbeat_failure_reconnect_delay_seconds: float = Field(10.0, gt=0)
    force_reconnect_delay_seconds: float = Field(1.0, ge=0)
    max_connection_attempts: int = Field(10, ge=1)

    # Persistent store
    store_backend: Literal["memory", "file", "redis"] = Field("file")
    store_path: Path = Field(Path(".agent/state.json"))
    redis_url: Optional[str] = Field(None, description="Redis connection URL for the redis store backend")
    redis_key: str = Field("crawl-agent")

    # Browser host
    browser_headless: bool = Field(True)
    browser_cdp_url: Optional[str] = Field(None, description="Attach to a running Chromium over CDP")
    browser_navigation_timeout_ms: int = Field(60000, ge=1000)

    # Local control endpoint
    control_host: str = Field("127.0.0.1")
    control_port: Optional[int] = Field(None, ge=1, le=65535, description="Serve the control plane on this port if set")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    json_logs: bool = Field(True, description="Whether to output JSON format logs")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        valid_envs = ["dev", "test", "staging", "prod"]
        if v not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v

    @field_validator("capabilities", "supported_sites", mode="before")
    @classmethod
    def validate_string_list(cls, v: Union[str, List[str], None]) -> List[str]:
        """Parse list settings from a JSON array or a comma separated string"""
        if v is None or v == "":
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            stripped = v.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Invalid JSON list: {e}")
                if not isinstance(parsed, list):
                    raise ValueError("JSON value must be an array")
                return [str(item) for item in parsed]
            return [item.strip() for item in stripped.split(",") if item.strip()]
        raise ValueError(f"Expected a list or string, got {type(v)}")

    @field_validator("search_url_template")
    @classmethod
    def validate_search_url_template(cls, v: str) -> str:
        if "{query}" not in v:
            raise ValueError("search_url_template must contain a {query} placeholder")
        return v

    @model_validator(mode="after")
    def validate_backends(self) -> "AgentSettings":
        """Validate backend-specific requirements"""
        if self.store_backend == "redis" and not self.redis_url:
            raise ValueError("redis_url is required for the redis store backend")
        if self.reconnect_max_delay_seconds < self.reconnect_base_delay_seconds:
            raise ValueError("reconnect_max_delay_seconds must be >= reconnect_base_delay_seconds")
        return self

    @property
    def resolved_websocket_url(self) -> str:
        if self.websocket_url:
            return self.websocket_url
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/ws"

    def to_descriptor(self) -> AgentDescriptor:
        """Capability descriptor sent on registration"""
        return AgentDescriptor(
            name=self.agent_name,
            capabilities=list(self.capabilities),
            max_concurrent_jobs=self.pool_size,
            supported_sites=list(self.supported_sites),
            version=self.agent_version,
        )

    def reconnect_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_connection_attempts,
            base_delay=self.reconnect_base_delay_seconds,
            max_delay=self.reconnect_max_delay_seconds,
            exponential_base=self.reconnect_backoff_multiplier,
        )


def _expand_env_variables(obj: Any) -> Any:
    """Recursively expand environment variables in configuration values."""
    if isinstance(obj, str):
        # Match ${VAR_NAME} or ${VAR_NAME:default_value} patterns
        def replace_env_var(match):
            var_with_default = match.group(1)
            if ":" in var_with_default:
                var_name, default_value = var_with_default.split(":", 1)
                return os.getenv(var_name, default_value)
            else:
                return os.getenv(var_with_default, match.group(0))  # Return original if not found

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, obj)
    elif isinstance(obj, dict):
        return {key: _expand_env_variables(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_variables(item) for item in obj]
    else:
        return obj


def load_config_from_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML file with environment variable expansion.

    Args:
        file_path: Path to YAML configuration file

    Returns:
        Dictionary containing configuration values with env vars expanded

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML file is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
        return _expand_env_variables(config)


def get_config_file_path(environment: str) -> Path:
    """Get the path to the bundled configuration file for the given environment."""
    config_dir = Path(__file__).parent
    return config_dir / f"{environment}.yaml"


def load_settings(
    environment: Optional[str] = None, config_file: Optional[Path] = None, **overrides: Any
) -> AgentSettings:
    """
    Load agent settings from environment variables and configuration files.

    Args:
        environment: Environment name. If None, read from AGENT_ENVIRONMENT
        config_file: Path to configuration file. If None, use default path
        **overrides: Additional configuration overrides

    Returns:
        Configured AgentSettings instance

    Raises:
        ValueError: If configuration is invalid
        FileNotFoundError: If an explicit configuration file is missing
    """
    if environment is None:
        environment = os.getenv("AGENT_ENVIRONMENT", "dev")

    config_data: Dict[str, Any] = {}

    if config_file:
        config_data = load_config_from_yaml(config_file)
    else:
        default_config_file = get_config_file_path(environment)
        if default_config_file.exists():
            config_data = load_config_from_yaml(default_config_file)

    config_data["environment"] = environment
    config_data.update(overrides)

    return AgentSettings(**config_data)


# Global settings instance (lazy-loaded)
_settings: Optional[AgentSettings] = None


def get_cached_settings() -> AgentSettings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings_cache() -> None:
    """Reset the cached settings instance (useful for testing)"""
    global _settings
    _settings = None
