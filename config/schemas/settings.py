"""Main settings schema for Jira to Redmine migration.

This module defines the core Pydantic settings model with validation and
environment variable handling for every configuration section.
"""

from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EXTENDED_API_PREFIX = "extended_api"


def _validate_http_url(label: str, value: str) -> str:
    if not value.startswith(("http://", "https://")):
        msg = f"{label} URL must start with http:// or https://"
        raise ValueError(msg)
    if not urlparse(value).netloc:
        msg = f"{label} URL must have a valid hostname"
        raise ValueError(msg)
    return value.rstrip("/")


class Settings(BaseSettings):
    """Application settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="forbid",
        env_prefix="J2R_",
    )

    # ========================================================================
    # JIRA CONFIGURATION (J2R_JIRA_*)
    # ========================================================================

    jira_url: str = Field(
        default="https://your-company.atlassian.net", description="Jira instance URL",
    )
    jira_username: str = Field(default="", description="Jira username/email")
    jira_api_token: str = Field(default="", description="Jira API token")
    jira_page_size: int = Field(
        default=100, ge=1, le=1000, description="Jira page size (maxResults)",
    )
    jira_jql: str = Field(
        default="order by created ASC", description="JQL used to stage Jira issues",
    )

    # ========================================================================
    # REDMINE CONFIGURATION (J2R_REDMINE_*)
    # ========================================================================

    redmine_url: str = Field(
        default="https://redmine.example.com", description="Redmine instance URL",
    )
    redmine_api_key: str = Field(default="", description="Redmine REST API key")
    redmine_default_user_status: Literal["ACTIVE", "LOCKED"] = Field(
        default="LOCKED", description="Status proposed for newly created Redmine users",
    )
    redmine_auth_source_id: int | None = Field(
        default=None, description="Authentication source assigned to created users",
    )
    redmine_extended_api_enabled: bool = Field(
        default=False, description="Use the Redmine extended API plugin",
    )
    redmine_extended_api_prefix: str = Field(
        default=DEFAULT_EXTENDED_API_PREFIX, description="Extended API path prefix",
    )

    # ========================================================================
    # MIGRATION SETTINGS (J2R_*)
    # ========================================================================

    log_level: str = Field(default="INFO", description="Logging level")
    ssl_verify: bool = Field(default=True, description="Enable SSL certificate verification")
    rate_limit_max_retries: int = Field(
        default=5, ge=1, description="Retries per request when Jira answers HTTP 429",
    )
    rate_limit_base_delay: float = Field(
        default=1.0, gt=0, description="Base delay (seconds) for 429 backoff",
    )

    # ========================================================================
    # ATTACHMENTS / DATABASE
    # ========================================================================

    attachments_download_concurrency: int = Field(
        default=1, ge=1, le=64, description="Parallel attachment downloads",
    )
    attachments_storage_dir: Path | None = Field(
        default=None, description="Local directory for downloaded attachments",
    )
    database_path: Path | None = Field(
        default=None, description="SQLite mapping store location",
    )

    # ========================================================================
    # VALIDATORS
    # ========================================================================

    @field_validator("jira_url")
    @classmethod
    def validate_jira_url(cls, v: str) -> str:
        """Validate Jira URL format."""
        return _validate_http_url("Jira", v)

    @field_validator("redmine_url")
    @classmethod
    def validate_redmine_url(cls, v: str) -> str:
        """Validate Redmine URL format."""
        return _validate_http_url("Redmine", v)

    @field_validator("redmine_extended_api_prefix")
    @classmethod
    def validate_extended_api_prefix(cls, v: str) -> str:
        """Trim slashes; an empty prefix falls back to the plugin default."""
        return v.strip().strip("/") or DEFAULT_EXTENDED_API_PREFIX

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "NOTICE", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            msg = f"Log level must be one of: {', '.join(valid_levels)}"
            raise ValueError(msg)
        return v.upper()

    @field_validator("attachments_storage_dir", "database_path", mode="before")
    @classmethod
    def empty_path_is_unset(cls, v: Any) -> Any:
        """Treat empty strings from YAML/env as 'use the default location'."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_authentication(self) -> "Settings":
        """Ensure both endpoints are configured."""
        if not self.jira_url:
            msg = "Jira URL must be configured"
            raise ValueError(msg)
        if not self.redmine_url:
            msg = "Redmine URL must be configured"
            raise ValueError(msg)
        return self

    # ========================================================================
    # UTILITY METHODS
    # ========================================================================

    def get_extended_api_config(self) -> dict[str, Any]:
        """Get the extended API section as dictionary."""
        return {
            "enabled": self.redmine_extended_api_enabled,
            "prefix": self.redmine_extended_api_prefix,
        }


def load_settings(config: dict[str, Any]) -> Settings:
    """Flatten the loader's section dictionaries into a validated Settings object.

    Raises:
        pydantic.ValidationError: If any value fails validation

    """
    jira = config.get("jira") or {}
    redmine = config.get("redmine") or {}
    extended = redmine.get("extended_api") or {}
    migration = config.get("migration") or {}
    rate_limit = migration.get("rate_limit") or {}
    attachments = config.get("attachments") or {}
    database = config.get("database") or {}

    values: dict[str, Any] = {
        "jira_url": jira.get("url"),
        "jira_username": jira.get("username"),
        "jira_api_token": jira.get("api_token"),
        "jira_page_size": jira.get("page_size"),
        "jira_jql": jira.get("jql"),
        "redmine_url": redmine.get("url"),
        "redmine_api_key": redmine.get("api_key"),
        "redmine_default_user_status": redmine.get("default_user_status"),
        "redmine_auth_source_id": redmine.get("auth_source_id"),
        "redmine_extended_api_enabled": extended.get("enabled"),
        "redmine_extended_api_prefix": extended.get("prefix"),
        "log_level": migration.get("log_level"),
        "ssl_verify": migration.get("ssl_verify"),
        "rate_limit_max_retries": rate_limit.get("max_retries"),
        "rate_limit_base_delay": rate_limit.get("base_delay"),
        "attachments_download_concurrency": attachments.get("download_concurrency"),
        "attachments_storage_dir": attachments.get("storage_dir"),
        "database_path": database.get("path"),
    }
    return Settings(**{key: value for key, value in values.items() if value is not None})
