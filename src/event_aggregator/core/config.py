"""
Configuration module for the Graph API layer.

This module provides configuration loading and validation for the Graph API
client, the rate limiters guarding outbound and inbound traffic, and the
token refresh runner. Tunables live in YAML; secrets come from the
environment.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(ValueError):
    """Raised when a configuration value is out of range."""


DEFAULT_EVENT_FIELDS = "id,name,description,start_time,end_time,place,cover{source}"
DEFAULT_PAGE_FIELDS = "id,name,access_token"


@dataclass
class GraphConfig:
    """Configuration for the Graph API client."""

    base_url: str = "https://graph.facebook.com"
    api_version: str = "v23.0"
    max_retries: int = 3
    retry_delay_ms: int = 1000
    page_size: int = 100
    request_timeout_s: float = 30.0
    token_invalid_code: int = 190
    past_events_days: int = 90
    event_fields: str = DEFAULT_EVENT_FIELDS
    page_fields: str = DEFAULT_PAGE_FIELDS

    @property
    def graph_url(self) -> str:
        """Versioned Graph API root."""
        return f"{self.base_url.rstrip('/')}/{self.api_version}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphConfig":
        """Create GraphConfig from dictionary, defaulting missing fields."""
        defaults = cls()
        return cls(
            base_url=data.get("base_url", defaults.base_url),
            api_version=data.get("api_version", defaults.api_version),
            max_retries=data.get("max_retries", defaults.max_retries),
            retry_delay_ms=data.get("retry_delay_ms", defaults.retry_delay_ms),
            page_size=data.get("page_size", defaults.page_size),
            request_timeout_s=data.get("request_timeout_s", defaults.request_timeout_s),
            token_invalid_code=data.get("token_invalid_code", defaults.token_invalid_code),
            past_events_days=data.get("past_events_days", defaults.past_events_days),
            event_fields=data.get("event_fields", defaults.event_fields),
            page_fields=data.get("page_fields", defaults.page_fields),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class TokenBucketConfig:
    """Capacity and refill rate for a token bucket limiter."""

    capacity: int = 24
    refill_rate: float = 24 / (24 * 60 * 60)  # tokens per second

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenBucketConfig":
        defaults = cls()
        return cls(
            capacity=data.get("capacity", defaults.capacity),
            refill_rate=data.get("refill_rate", defaults.refill_rate),
        )


@dataclass
class SlidingWindowConfig:
    """Named sliding window: at most max_requests per window_ms per key."""

    name: str = "facebook-webhooks"
    max_requests: int = 1
    window_ms: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SlidingWindowConfig":
        defaults = cls()
        return cls(
            name=data.get("name", defaults.name),
            max_requests=data.get("max_requests", defaults.max_requests),
            window_ms=data.get("window_ms", defaults.window_ms),
        )


@dataclass
class TokenRefreshConfig:
    """Token expiry policy."""

    warning_days: int = 7
    default_expires_days: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRefreshConfig":
        defaults = cls()
        return cls(
            warning_days=data.get("warning_days", defaults.warning_days),
            default_expires_days=data.get(
                "default_expires_days", defaults.default_expires_days
            ),
        )


@dataclass
class AppConfig:
    """Top-level configuration."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    token_refresh_limit: TokenBucketConfig = field(default_factory=TokenBucketConfig)
    webhook_limit: SlidingWindowConfig = field(default_factory=SlidingWindowConfig)
    token_refresh: TokenRefreshConfig = field(default_factory=TokenRefreshConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """Create AppConfig from dictionary."""
        limits = data.get("rate_limits", {}) or {}
        return cls(
            graph=GraphConfig.from_dict(data.get("graph", {}) or {}),
            token_refresh_limit=TokenBucketConfig.from_dict(
                limits.get("token_refresh", {}) or {}
            ),
            webhook_limit=SlidingWindowConfig.from_dict(limits.get("webhooks", {}) or {}),
            token_refresh=TokenRefreshConfig.from_dict(data.get("token_refresh", {}) or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary in the same shape load_config reads."""
        return {
            "graph": self.graph.to_dict(),
            "rate_limits": {
                "token_refresh": asdict(self.token_refresh_limit),
                "webhooks": asdict(self.webhook_limit),
            },
            "token_refresh": asdict(self.token_refresh),
        }


@dataclass
class Credentials:
    """Application secrets read from the environment."""

    app_id: str | None = None
    app_secret: str | None = None
    webhook_verify_token: str | None = None
    sync_token: str | None = None


def get_default_config() -> AppConfig:
    """Return a configuration populated with defaults."""
    return AppConfig()


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default location.

    Returns:
        AppConfig with graph and rate limit settings

    Raises:
        yaml.YAMLError: If config file is invalid YAML
        ConfigValidationError: If config validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parents[3] / "config" / "graph.yml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        return get_default_config()

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    if not data:
        return get_default_config()

    if not isinstance(data, dict):
        raise ConfigValidationError(f"Config root in {config_path} must be a mapping")

    config = AppConfig.from_dict(data)
    validate_config(config)
    return config


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration.

    Args:
        config: Configuration to validate

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    graph = config.graph
    if not graph.base_url:
        raise ConfigValidationError("graph.base_url must be set")

    if not graph.api_version:
        raise ConfigValidationError("graph.api_version must be set")

    if graph.max_retries < 1:
        raise ConfigValidationError("graph.max_retries must be at least 1")

    if graph.retry_delay_ms < 0:
        raise ConfigValidationError("graph.retry_delay_ms must not be negative")

    if graph.page_size <= 0:
        raise ConfigValidationError("graph.page_size must be positive")

    if graph.request_timeout_s <= 0:
        raise ConfigValidationError("graph.request_timeout_s must be positive")

    if graph.past_events_days < 0:
        raise ConfigValidationError("graph.past_events_days must not be negative")

    bucket = config.token_refresh_limit
    if bucket.capacity <= 0:
        raise ConfigValidationError("rate_limits.token_refresh.capacity must be positive")

    if bucket.refill_rate <= 0:
        raise ConfigValidationError("rate_limits.token_refresh.refill_rate must be positive")

    window = config.webhook_limit
    if not window.name:
        raise ConfigValidationError("rate_limits.webhooks.name must be set")

    if window.max_requests <= 0:
        raise ConfigValidationError("rate_limits.webhooks.max_requests must be positive")

    if window.window_ms <= 0:
        raise ConfigValidationError("rate_limits.webhooks.window_ms must be positive")

    if config.token_refresh.warning_days < 0:
        raise ConfigValidationError("token_refresh.warning_days must not be negative")

    if config.token_refresh.default_expires_days <= 0:
        raise ConfigValidationError("token_refresh.default_expires_days must be positive")


def load_credentials(environ: dict[str, str] | None = None) -> Credentials:
    """
    Read application secrets from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ)
    """
    env = os.environ if environ is None else environ
    return Credentials(
        app_id=env.get("FACEBOOK_APP_ID") or None,
        app_secret=env.get("FACEBOOK_APP_SECRET") or None,
        webhook_verify_token=env.get("FACEBOOK_WEBHOOK_VERIFY_TOKEN") or None,
        sync_token=env.get("SYNC_TOKEN") or None,
    )
