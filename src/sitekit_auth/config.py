"""Configuration management for Site Kit Auth.

Provides configuration loading from environment variables, .env files,
and optional configuration files with proper precedence handling.
"""

from __future__ import annotations

import contextlib
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/siteverification",
    "https://www.googleapis.com/auth/webmasters",
]


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    """Deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


def _is_absolute_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class Config(BaseModel):
    """Main configuration model for Site Kit Auth.

    Configuration can be loaded from:
    - Environment variables with SITEKIT_AUTH_ prefix
    - Optional .env file in project root
    - Optional configuration file passed via CLI
    """

    # Core settings
    app_name: str = Field(default="Site Kit Auth", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    environment: Environment = Field(
        default=Environment.LOCAL, description="Deployment environment"
    )

    # Server settings
    host: str = Field(default="127.0.0.1", description="Server bind host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server bind port")

    # Site settings
    site_name: str = Field(default="My Site", description="Site name sent to the proxy")
    site_url: str = Field(
        default="http://localhost:8000", description="Public home URL of the site"
    )
    admin_path: str = Field(default="/admin", description="Path of the admin entry point")

    # Request protection
    secret_key: SecretStr | None = Field(
        default=None, description="Secret used to sign nonces"
    )
    nonce_lifetime: int = Field(
        default=86400, ge=60, description="Nonce lifetime in seconds"
    )
    session_cookie_name: str = Field(
        default="sitekit_session", description="Host session cookie name"
    )
    session_timeout_minutes: int = Field(
        default=1440, ge=1, description="Idle timeout of host sessions"
    )
    host_token: SecretStr | None = Field(
        default=None,
        description="Shared secret the host platform presents to open sessions",
    )

    # Proxy settings
    use_proxy: bool = Field(
        default=True, description="Obtain client credentials through the proxy"
    )
    proxy_url: str = Field(
        default="https://sitekit.withgoogle.com", description="Proxy base URL"
    )

    # Direct OAuth settings
    oauth_client_id: str | None = Field(default=None, description="OAuth client identifier")
    oauth_client_secret: SecretStr | None = Field(
        default=None, description="OAuth client secret"
    )
    oauth_authorization_url: str = Field(
        default="https://accounts.google.com/o/oauth2/v2/auth",
        description="OAuth authorization endpoint URL",
    )
    oauth_token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint URL",
    )
    oauth_revoke_url: str = Field(
        default="https://oauth2.googleapis.com/revoke",
        description="OAuth revocation endpoint URL",
    )
    oauth_userinfo_url: str | None = Field(
        default="https://www.googleapis.com/oauth2/v2/userinfo",
        description="OAuth userinfo endpoint URL",
    )
    oauth_required_scopes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REQUIRED_SCOPES),
        description="Scopes every authenticated user must grant",
    )

    http_timeout: float = Field(
        default=30.0, gt=0, description="Timeout for outbound HTTP requests"
    )

    # Storage
    storage_path: str | None = Field(
        default=None, description="Path for persistent encrypted storage"
    )
    storage_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet encryption key for persistent storage"
    )

    model_config = {
        "extra": "allow",
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        """Normalize environment to lowercase."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("oauth_required_scopes", mode="before")
    @classmethod
    def split_scopes(cls, v: Any) -> Any:
        """Accept scopes as a space or comma separated string."""
        if isinstance(v, str):
            return [s for s in v.replace(",", " ").split() if s]
        return v

    @field_validator("site_url", "proxy_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require absolute http(s) URLs without a trailing slash."""
        if not _is_absolute_http_url(v):
            msg = f"must be an absolute http(s) URL: {v!r}"
            raise ValueError(msg)
        return v.rstrip("/")

    @field_validator("admin_path")
    @classmethod
    def normalize_admin_path(cls, v: str) -> str:
        """Ensure the admin path has exactly one leading slash."""
        return "/" + v.strip("/")

    @model_validator(mode="after")
    def validate_direct_credentials(self) -> Config:
        """Validate direct (non-proxy) OAuth configuration."""
        if not self.use_proxy:
            required_fields = [
                ("oauth_client_id", self.oauth_client_id),
                ("oauth_client_secret", self.oauth_client_secret),
            ]
            missing = [name for name, value in required_fields if not value]
            if missing:
                msg = (
                    f"Direct OAuth mode is enabled but missing required fields: "
                    f"{', '.join(missing)}"
                )
                raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def validate_storage(self) -> Config:
        """Validate storage configuration."""
        if self.storage_path and not self.storage_encryption_key:
            msg = "storage_encryption_key is required when storage_path is set"
            raise ValueError(msg)
        return self

    @property
    def site_host(self) -> str:
        """Host name of the site URL."""
        return urlparse(self.site_url).hostname or ""


def _get_env_value(key: str, prefix: str = "SITEKIT_AUTH_") -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


_BOOL_FIELDS = ("use_proxy",)
_INT_FIELDS = ("port", "nonce_lifetime", "session_timeout_minutes")


def _load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}
    for field_name in Config.model_fields:
        value = _get_env_value(field_name)
        if value is None:
            continue
        if field_name in _BOOL_FIELDS:
            config[field_name] = value.lower() in ("true", "1", "yes")
            continue
        if field_name in _INT_FIELDS:
            with contextlib.suppress(ValueError):
                config[field_name] = int(value)
                continue
        config[field_name] = value

    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    import json

    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        import yaml

        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    secret_keys = {
        "secret_key",
        "host_token",
        "oauth_client_secret",
        "storage_encryption_key",
    }
    if key in secret_keys and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
